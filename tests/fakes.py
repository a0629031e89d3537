from __future__ import annotations

import threading
import time

import numpy as np

from sam2_interactive.embedding_store import ByteStore
from sam2_interactive.modeling.engine import InferenceEngine
from sam2_interactive.types import (
    HIGH_RES_FEAT1_SHAPE,
    HIGH_RES_FEAT2_SHAPE,
    IMAGE_EMBED_SHAPE,
    Embeddings,
)

DEFAULT_SCORES = (0.8734, 0.5, 1.0)


def make_embeddings(fill=0.0):
    return Embeddings(
        image_embed=np.full(IMAGE_EMBED_SHAPE, fill, dtype=np.float32),
        high_res_feat1=np.full(HIGH_RES_FEAT1_SHAPE, fill, dtype=np.float32),
        high_res_feat2=np.full(HIGH_RES_FEAT2_SHAPE, fill, dtype=np.float32),
    )


def make_decoder_outputs(size, scores=DEFAULT_SCORES):
    """Channel i covers the top-left (i+1)/4 of the square; low-res channel i is filled with i+1."""
    count = len(scores)
    masks = np.zeros((1, count, size, size), dtype=np.uint8)
    for i in range(count):
        edge = size * (i + 1) // 4
        masks[0, i, :edge, :edge] = 1
    low_res = np.stack(
        [np.full((256, 256), i + 1, dtype=np.float32) for i in range(count)]
    )[None]
    return {
        "masks": masks,
        "iou_predictions": np.array([scores], dtype=np.float32),
        "low_res_masks": low_res,
    }


class FakeInferenceEngine(InferenceEngine):
    def __init__(self, target_size=64, scores=DEFAULT_SCORES, decode_delay=0.0, **kwargs):
        self.target_size = target_size
        self.scores = scores
        self.decode_delay = decode_delay
        self.config = kwargs
        self.initialized = False
        self.encode_calls = 0
        self.encoded_tensors = []
        self.requests = []
        self.next_outputs = None
        self.overlapping_decodes = 0
        self._active = 0
        self._active_lock = threading.Lock()

    def init(self):
        self.initialized = True
        return self

    def encode(self, image_tensor):
        self.encode_calls += 1
        self.encoded_tensors.append(image_tensor)
        return make_embeddings(fill=0.25)

    def decode(self, request):
        with self._active_lock:
            self._active += 1
            if self._active > 1:
                self.overlapping_decodes += 1
        try:
            if self.decode_delay:
                time.sleep(self.decode_delay)
            self.requests.append(request)
            if self.next_outputs is not None:
                outputs, self.next_outputs = self.next_outputs, None
                return outputs
            return make_decoder_outputs(self.target_size, self.scores)
        finally:
            with self._active_lock:
                self._active -= 1


class FailingByteStore(ByteStore):
    def __init__(self):
        self.get_calls = 0
        self.put_calls = 0

    def get(self, key):
        self.get_calls += 1
        raise OSError("store offline")

    def put(self, key, data):
        self.put_calls += 1
        raise OSError("store offline")
