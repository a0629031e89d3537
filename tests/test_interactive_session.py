import threading

import numpy as np
import pytest

from sam2_interactive.embedding_store import EmbeddingStore, InMemoryByteStore
from sam2_interactive.errors import (
    DecodeFormatError,
    NoPriorDecodeError,
    SessionNotPreparedError,
)
from sam2_interactive.interactive_session import InteractionSession
from sam2_interactive.types import Box, LabeledPoint, Point, SessionState
from tests.fakes import FailingByteStore, FakeInferenceEngine, make_decoder_outputs

TARGET = 64


@pytest.fixture
def image():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(32, 48, 3), dtype=np.uint8)


@pytest.fixture
def engine():
    return FakeInferenceEngine(target_size=TARGET)


@pytest.fixture
def session(engine):
    return InteractionSession(engine, target_size=TARGET)


def test_decode_before_prepare_fails(session, engine):
    with pytest.raises(SessionNotPreparedError):
        session.decode()
    assert engine.requests == []
    assert session.state is SessionState.UNINITIALIZED


def test_decode_after_prepare_returns_one_mask_per_channel(session, image):
    session.prepare(image)
    session.add_point(LabeledPoint(10, 20, label=1))

    output = session.decode()

    assert len(output.masks) == 3
    assert [m.score for m in output.masks] == [87.34, 50.0, 100.0]
    for mask in output.masks:
        assert mask.raster.shape == (32, 48, 4)
        assert mask.raster.dtype == np.uint8
    assert session.state is SessionState.DECODED


def test_prepare_is_idempotent(session, engine, image):
    first = session.prepare(image)
    second = session.prepare(image)

    assert second is first
    assert engine.encode_calls == 1
    assert session.state is SessionState.PREPARED


def test_prepare_encodes_planar_target_sized_tensor(session, engine, image):
    session.prepare(image)
    tensor = engine.encoded_tensors[0]
    assert tensor.shape == (1, 3, TARGET, TARGET)
    assert tensor.dtype == np.uint8
    transform = session.transform
    assert (transform.scaled_width, transform.scaled_height) == (64, 43)
    assert (transform.offset_x, transform.offset_y) == (0, 10)


def test_prompt_mutations_do_not_run_inference(session, engine, image):
    session.set_points([LabeledPoint(1, 2), LabeledPoint(3, 4, label=0)])
    session.add_point(LabeledPoint(5, 6))
    session.set_box(Box(Point(0, 0), Point(10, 10)))
    session.set_mask_hint(np.ones((1, 1, 256, 256), dtype=np.float32))
    assert engine.encode_calls == 0
    assert engine.requests == []
    assert [p.label for p in session.points] == [1, 0, 1]
    assert isinstance(session.points, tuple)


def test_first_decode_uses_empty_mask_hint_and_prompt_order(session, engine, image):
    session.prepare(image)
    points = [LabeledPoint(5, 5, label=1), LabeledPoint(1, 1, label=0), LabeledPoint(9, 2)]
    session.set_points(points)
    session.decode()

    request = engine.requests[0]
    assert list(request.points) == points
    assert request.box.is_empty
    assert not request.mask_hint.any()


def test_refine_before_decode_fails(session, image):
    with pytest.raises(NoPriorDecodeError):
        session.refine()
    session.prepare(image)
    with pytest.raises(NoPriorDecodeError):
        session.refine()


def test_refine_changes_only_the_mask_hint(session, engine, image):
    session.prepare(image)
    session.set_points([LabeledPoint(30, 30)])
    session.set_box(Box(Point(2, 3), Point(40, 50)))
    session.decode()
    session.refine()

    before, after = engine.requests
    assert after.points == before.points
    assert after.box == before.box
    assert after.embeddings is before.embeddings
    assert not before.mask_hint.any()
    # channel 0 of the fake low-res masks is filled with 1.0
    assert (after.mask_hint == 1.0).all()
    assert session.state is SessionState.REFINING


def test_mask_hint_is_not_shared_with_engine_requests(session, engine, image):
    session.prepare(image)
    session.decode()
    session.refine()
    engine.requests[-1].mask_hint[...] = 42.0
    assert (session.mask_hint == 1.0).all()

    session.decode()
    assert (engine.requests[-1].mask_hint == 1.0).all()


def test_thin_images_can_be_prepared_and_decoded(engine):
    session = InteractionSession(engine, target_size=TARGET)
    session.prepare(np.zeros((200, 1, 3), dtype=np.uint8))
    assert session.transform.scaled_width == 1
    output = session.decode()
    assert [mask.raster.shape for mask in output.masks] == [(200, 1, 4)] * 3


def test_refine_uses_channel_zero_even_when_it_scores_lower(image):
    engine = FakeInferenceEngine(target_size=TARGET, scores=(0.1, 0.99, 0.5))
    session = InteractionSession(engine, target_size=TARGET)
    session.prepare(image)
    session.decode()
    session.refine()
    assert (engine.requests[1].mask_hint == 1.0).all()


def test_refine_replaces_previous_result(session, engine, image):
    session.prepare(image)
    first = session.decode()
    engine.next_outputs = make_decoder_outputs(TARGET, scores=(0.3, 0.2, 0.1))
    session.refine()
    assert session.previous_result.scores == [30.0, 20.0, 10.0]
    assert first.result.scores == [87.34, 50.0, 100.0]


def test_repeated_refine_keeps_feeding_back(session, engine, image):
    session.prepare(image)
    session.decode()
    session.refine()
    session.refine()
    assert len(engine.requests) == 3
    assert session.state is SessionState.REFINING
    session.decode()
    assert session.state is SessionState.DECODED
    assert (engine.requests[3].mask_hint == 1.0).all()


def test_returned_results_are_copies(session, engine, image):
    session.prepare(image)
    output = session.decode()
    output.result.low_res_masks[0].data[...] = -5.0
    output.masks[0].raster[...] = 0

    session.refine()
    assert (engine.requests[1].mask_hint == 1.0).all()


def test_malformed_output_is_fatal_to_the_call(session, engine, image):
    session.prepare(image)
    session.decode()
    previous = session.previous_result

    engine.next_outputs = {"masks": np.zeros((1, 3, TARGET, TARGET), dtype=np.uint8)}
    with pytest.raises(DecodeFormatError):
        session.refine()

    assert session.previous_result is previous
    assert session.state is SessionState.DECODED
    assert not session.mask_hint.any()


def test_store_hit_skips_encoding(image):
    store = EmbeddingStore(InMemoryByteStore())
    first_engine = FakeInferenceEngine(target_size=TARGET)
    InteractionSession(first_engine, store=store, target_size=TARGET).prepare(image)

    second_engine = FakeInferenceEngine(target_size=TARGET)
    session = InteractionSession(second_engine, store=store, target_size=TARGET)
    embeddings = session.prepare(image)

    assert first_engine.encode_calls == 1
    assert second_engine.encode_calls == 0
    assert (embeddings.image_embed == 0.25).all()


def test_store_keys_include_fingerprint_and_target_size(image):
    byte_store = InMemoryByteStore()
    store = EmbeddingStore(byte_store)
    engine = FakeInferenceEngine(target_size=TARGET)
    InteractionSession(engine, store=store, target_size=TARGET).prepare(image, fingerprint="img-1")
    InteractionSession(engine, store=store, target_size=32).prepare(image, fingerprint="img-1")

    assert byte_store.get(f"img-1-{TARGET}") is not None
    assert byte_store.get("img-1-32") is not None
    assert engine.encode_calls == 2


def test_store_failures_degrade_to_encoding(engine, image):
    byte_store = FailingByteStore()
    session = InteractionSession(engine, store=EmbeddingStore(byte_store), target_size=TARGET)

    session.prepare(image)

    assert engine.encode_calls == 1
    assert byte_store.get_calls == 1
    assert byte_store.put_calls == 1
    assert session.state is SessionState.PREPARED


def test_set_embeddings_skips_encoding(engine, image):
    source = InteractionSession(engine, target_size=TARGET)
    embeddings = source.prepare(image)

    session = InteractionSession(engine, target_size=TARGET)
    session.set_embeddings(embeddings, source.transform)
    session.decode()

    assert engine.encode_calls == 1
    assert session.state is SessionState.DECODED


def test_map_point_requires_prepare(session, image):
    with pytest.raises(SessionNotPreparedError):
        session.map_point(LabeledPoint(1, 1))
    session.prepare(image)
    mapped = session.map_point(LabeledPoint(24, 16, label=0))
    assert mapped.label == 0
    assert mapped.x == pytest.approx(32)
    assert mapped.y == pytest.approx(16 * 4 / 3 + 10)


def test_reset_prompts(session, image):
    session.prepare(image)
    session.add_point(LabeledPoint(1, 1))
    session.decode()
    session.refine()

    session.reset_prompts()

    assert session.points == ()
    assert session.box.is_empty
    assert not session.mask_hint.any()
    assert session.previous_result is None
    assert session.state is SessionState.PREPARED
    with pytest.raises(NoPriorDecodeError):
        session.refine()


def test_set_mask_hint_validates_size(session):
    with pytest.raises(ValueError):
        session.set_mask_hint(np.zeros((128, 128), dtype=np.float32))
    session.set_mask_hint(np.full(256 * 256, 0.5, dtype=np.float32))
    assert session.mask_hint.shape == (256, 256)


def test_get_decode_request_reflects_current_prompts(session, image):
    with pytest.raises(SessionNotPreparedError):
        session.get_decode_request()
    session.prepare(image)
    session.add_point(LabeledPoint(7, 8))
    request = session.get_decode_request()
    assert request.points == (LabeledPoint(7, 8),)
    request.mask_hint[...] = 3.0
    assert not session.mask_hint.any()


def test_concurrent_decodes_are_serialized(image):
    engine = FakeInferenceEngine(target_size=TARGET, decode_delay=0.02)
    session = InteractionSession(engine, target_size=TARGET)
    session.prepare(image)

    threads = [threading.Thread(target=session.decode) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(engine.requests) == 4
    assert engine.overlapping_decodes == 0


def test_sessions_are_independent(engine, image):
    a = InteractionSession(engine, target_size=TARGET)
    b = InteractionSession(engine, target_size=TARGET)
    a.prepare(image)
    a.add_point(LabeledPoint(1, 1))
    assert b.state is SessionState.UNINITIALIZED
    assert b.points == ()
