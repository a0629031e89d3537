# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Interactive Segmentation Session - Encode Once, Decode Many, Refine

This module provides the InteractionSession class, the orchestrator of
interactive segmentation on a single still image. It owns the prompt state
(points, box, mask hint), the image embeddings and the previous decode
result, and drives the two model stages through an InferenceEngine.

Workflow:
1. prepare(image): fit the image into the model's square input, then load its
   embeddings from the EmbeddingStore or encode them once.
2. Mutate prompts with set_points/add_point/set_box/set_mask_hint. These never
   run inference.
3. decode(): run the mask decoder on the current prompts and return masks
   mapped back to original image space.
4. refine(): feed the previous low-resolution mask back as mask hint and
   decode again with the same points and box. Call it repeatedly for more
   refinement steps; the session performs exactly one per call.

Session lifecycle:

    UNINITIALIZED --prepare--> PREPARED --decode--> DECODED --refine--> REFINING
                                  ^                    |  ^                |
                                  |                    |  +----decode------+
                                  +---reset_prompts----+-------------------+

Embeddings never change once a session is prepared. Each decode replaces the
previous result; results are never merged.

Example Usage:
    engine = OnnxInferenceEngine(encoder_path, decoder_path).init()
    session = InteractionSession(engine, store=EmbeddingStore(FileByteStore("cache")))
    session.prepare(image)
    session.add_point(session.map_point(LabeledPoint(420, 310, label=1)))
    output = session.decode()
    output = session.refine()
    best = output.masks[0]
"""

import logging
import threading
from typing import Dict, Iterable, Optional, Tuple, Union

import numpy as np
from PIL.Image import Image

from sam2_interactive.embedding_store import EmbeddingStore, image_fingerprint
from sam2_interactive.errors import NoPriorDecodeError, SessionNotPreparedError
from sam2_interactive.modeling.engine import InferenceEngine
from sam2_interactive.types import (
    LOW_RES_MASK_SIZE,
    Box,
    CoordinateTransform,
    DecodeOutput,
    DecodeRequest,
    DecodeResult,
    Embeddings,
    LabeledPoint,
    LowResMask,
    Mask,
    SessionState,
)
from sam2_interactive.utils.codec import TensorCodec
from sam2_interactive.utils.transforms import CoordinateMapper

_S = SessionState

# Allowed state changes per operation; anything else is a precondition error.
_TRANSITIONS: Dict[str, Dict[SessionState, SessionState]] = {
    "prepare": {_S.UNINITIALIZED: _S.PREPARED},
    "decode": {_S.PREPARED: _S.DECODED, _S.DECODED: _S.DECODED, _S.REFINING: _S.DECODED},
    "refine": {_S.DECODED: _S.REFINING, _S.REFINING: _S.REFINING},
    "reset_prompts": {_S.PREPARED: _S.PREPARED, _S.DECODED: _S.PREPARED, _S.REFINING: _S.PREPARED},
}


def _empty_mask_hint() -> np.ndarray:
    return np.zeros((LOW_RES_MASK_SIZE, LOW_RES_MASK_SIZE), dtype=np.float32)


class InteractionSession:
    """
    Interactive segmentation of one image through an encode/decode engine.

    A session is driven by a single logical owner. prepare(), decode() and
    refine() are serialized by a per-session lock so two concurrent calls can
    never race on the previous-result slot. Separate sessions share nothing
    but the engine and the store, and can run in parallel.

    Prompt coordinates are in model space. map_point()/map_box() convert
    from original image coordinates using the transform computed by prepare().
    """

    def __init__(
        self,
        engine: InferenceEngine,
        store: Optional[EmbeddingStore] = None,
        target_size: int = 1024,
        codec: Optional[TensorCodec] = None,
    ) -> None:
        """
        Args:
            engine (InferenceEngine): Runs the encoder and decoder stages.
            store (EmbeddingStore, optional): Embedding cache consulted by
                prepare(). Without one, every new session encodes its image.
            target_size (int): Side of the model's square input.
            codec (TensorCodec, optional): Buffer packing and mask rendering;
                a default codec is created if omitted.
        """
        self.engine = engine
        self.store = store
        self.codec = codec if codec is not None else TensorCodec()
        self._mapper = CoordinateMapper(target_size)
        self._lock = threading.Lock()

        self._state = SessionState.UNINITIALIZED
        self._embeddings: Optional[Embeddings] = None
        self._transform: Optional[CoordinateTransform] = None

        # Prompt state, in model space
        self._points = []
        self._box = Box.empty()
        self._mask_hint = _empty_mask_hint()

        self._previous_result: Optional[DecodeResult] = None

    @property
    def target_size(self) -> int:
        return self._mapper.target_size

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def embeddings(self) -> Optional[Embeddings]:
        return self._embeddings

    @property
    def transform(self) -> Optional[CoordinateTransform]:
        return self._transform

    @property
    def previous_result(self) -> Optional[DecodeResult]:
        return self._previous_result

    @property
    def points(self) -> Tuple[LabeledPoint, ...]:
        return tuple(self._points)

    @property
    def box(self) -> Box:
        return self._box

    @property
    def mask_hint(self) -> np.ndarray:
        return self._mask_hint.copy()

    def _transition(self, operation: str) -> None:
        allowed = _TRANSITIONS[operation]
        if self._state not in allowed:
            if operation == "refine":
                raise NoPriorDecodeError(
                    "A mask must be decoded with .decode() before it can be refined."
                )
            raise SessionNotPreparedError(
                f"An image must be set with .prepare(...) before .{operation}()."
            )
        self._state = allowed[self._state]

    def _cache_key(self, fingerprint: str) -> str:
        return f"{fingerprint}-{self.target_size}"

    def prepare(
        self, image: Union[np.ndarray, Image], fingerprint: Optional[str] = None
    ) -> Embeddings:
        """
        Compute or load the embeddings for an image.

        Once a session holds embeddings, further calls are no-ops that return
        the cached embeddings; use a new session for a new image.

        Args:
            image (np.ndarray or PIL.Image): HxW, HxWx3 or HxWx4 uint8 array,
                or a PIL image.
            fingerprint (str, optional): Stable identifier of the image used as
                cache key. Computed from the pixels when a store is configured
                and no fingerprint is given.

        Returns:
            Embeddings: The session's embeddings.
        """
        with self._lock:
            if self._embeddings is not None:
                logging.warning("Embeddings already computed for this session, skipping encode.")
                return self._embeddings

            padded, transform = self._mapper.prepare_image(image)

            key = None
            embeddings = None
            if self.store is not None:
                key = self._cache_key(fingerprint or image_fingerprint(image))
                embeddings = self._load_embeddings(key)

            if embeddings is None:
                logging.info("Computing image embeddings for the provided image...")
                embeddings = self.engine.encode(self.codec.pack_image(padded))
                logging.info("Image embeddings computed.")
                if key is not None:
                    self._store_embeddings(key, embeddings)

            self._transition("prepare")
            self._embeddings = embeddings
            self._transform = transform
            return embeddings

    def set_embeddings(
        self, embeddings: Embeddings, transform: CoordinateTransform
    ) -> Embeddings:
        """Adopt embeddings computed elsewhere, together with their transform."""
        with self._lock:
            if self._embeddings is not None:
                logging.warning("Embeddings already computed for this session, ignoring new ones.")
                return self._embeddings
            if transform.target_size != self.target_size:
                raise ValueError(
                    f"transform targets {transform.target_size}, session uses {self.target_size}"
                )
            self._transition("prepare")
            self._embeddings = embeddings
            self._transform = transform
            return embeddings

    def _load_embeddings(self, key: str) -> Optional[Embeddings]:
        try:
            embeddings = self.store.get(key)
        except Exception as e:
            logging.warning(f"Embedding store lookup failed for {key}, re-encoding: {e}")
            return None
        if embeddings is None:
            logging.info(f"No cached embeddings for {key}")
        else:
            logging.info(f"Loaded cached embeddings for {key}")
        return embeddings

    def _store_embeddings(self, key: str, embeddings: Embeddings) -> None:
        try:
            self.store.put(key, embeddings)
        except Exception as e:
            logging.warning(f"Embedding store write failed for {key}: {e}")

    def set_points(self, points: Iterable[LabeledPoint]) -> None:
        self._points = list(points)

    def add_point(self, point: LabeledPoint) -> None:
        self._points.append(point)

    def set_box(self, box: Box) -> None:
        self._box = box

    def set_mask_hint(self, mask_hint: np.ndarray) -> None:
        """Accepts a 256x256, 1x1x256x256 or flat 65536-value buffer."""
        hint = np.asarray(mask_hint, dtype=np.float32)
        if hint.size != LOW_RES_MASK_SIZE * LOW_RES_MASK_SIZE:
            raise ValueError(
                f"mask hint must hold {LOW_RES_MASK_SIZE}x{LOW_RES_MASK_SIZE} values, "
                f"got shape {hint.shape}"
            )
        self._mask_hint = np.array(
            hint.reshape(LOW_RES_MASK_SIZE, LOW_RES_MASK_SIZE), dtype=np.float32, copy=True
        )

    def reset_prompts(self) -> None:
        """Clear points, box, mask hint and the previous result; keep the embeddings."""
        with self._lock:
            self._transition("reset_prompts")
            self._points = []
            self._box = Box.empty()
            self._mask_hint = _empty_mask_hint()
            self._previous_result = None

    def map_point(self, point: LabeledPoint) -> LabeledPoint:
        """Map a point from original image space to model space, keeping its label."""
        transform = self._require_transform()
        mapped = transform.to_model(point.x, point.y)
        return LabeledPoint(mapped.x, mapped.y, label=point.label)

    def map_box(self, box: Box) -> Box:
        return self._require_transform().map_box(box)

    def _require_transform(self) -> CoordinateTransform:
        if self._transform is None:
            raise SessionNotPreparedError(
                "An image must be set with .prepare(...) before mapping coordinates."
            )
        return self._transform

    def get_decode_request(self) -> DecodeRequest:
        """The request the next decode() would send, built from the current prompts."""
        return self._build_request(self._mask_hint)

    def _build_request(self, mask_hint: np.ndarray) -> DecodeRequest:
        if self._embeddings is None:
            raise SessionNotPreparedError(
                "An image must be set with .prepare(...) before mask prediction."
            )
        return DecodeRequest(
            embeddings=self._embeddings,
            points=tuple(self._points),
            box=self._box,
            mask_hint=np.array(mask_hint, dtype=np.float32, copy=True),
        )

    def decode(self) -> DecodeOutput:
        """
        Decode masks for the current prompts.

        The result is kept as the basis for refine(), and every mask is mapped
        back to original image space before being returned.

        Raises:
            SessionNotPreparedError: If prepare() has not run.
            DecodeFormatError: If the engine returned malformed outputs. The
                previous result is left untouched.
        """
        with self._lock:
            return self._decode(self._mask_hint, "decode")

    def refine(self) -> DecodeOutput:
        """
        Decode again using the previous low-resolution mask as mask hint.

        Channel 0 of the previous low-resolution masks is used whatever its
        score, exactly like the first mask returned to the caller.

        Raises:
            NoPriorDecodeError: If nothing has been decoded yet.
        """
        with self._lock:
            if self._previous_result is None:
                raise NoPriorDecodeError(
                    "A mask must be decoded with .decode() before it can be refined."
                )
            if not self._previous_result.low_res_masks:
                raise NoPriorDecodeError("The previous decode returned no masks to refine.")
            mask_hint = self._previous_result.low_res_masks[0].data
            return self._decode(mask_hint, "refine")

    def _decode(self, mask_hint: np.ndarray, operation: str) -> DecodeOutput:
        request = self._build_request(mask_hint)
        logging.info(
            f"Decoding with {len(request.points)} point(s)"
            + ("" if request.box.is_empty else " and a box")
        )
        raw = self.engine.decode(request)
        result = self.codec.unpack_decode_outputs(raw)

        self._transition(operation)
        self._mask_hint = request.mask_hint.copy()
        self._previous_result = result

        masks = [
            Mask(raster=self._mapper.postprocess_mask(mask.raster, self._transform), score=mask.score)
            for mask in result.masks
        ]
        return DecodeOutput(masks=masks, result=_copy_result(result))


def _copy_result(result: DecodeResult) -> DecodeResult:
    return DecodeResult(
        masks=[Mask(raster=m.raster.copy(), score=m.score) for m in result.masks],
        scores=list(result.scores),
        low_res_masks=[
            LowResMask(data=m.data.copy(), raster=m.raster.copy(), score=m.score)
            for m in result.low_res_masks
        ],
    )
