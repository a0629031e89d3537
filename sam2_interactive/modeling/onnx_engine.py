# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
ONNX Runtime implementation of the inference engine.

Runs the exported SAM2 image encoder and mask decoder graphs. The encoder
graph takes a single input named "image" ([1, 3, S, S] uint8) and produces
"image_embed", "high_res_feat1" and "high_res_feat2". The decoder graph takes
the named feeds built by TensorCodec.pack_decode_request.

Choosing execution providers is left to the caller; whatever is passed in is
forwarded to onnxruntime unchanged.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import onnxruntime as ort

from sam2_interactive.errors import EngineUnavailableError
from sam2_interactive.modeling.engine import InferenceEngine
from sam2_interactive.types import DecodeRequest, Embeddings
from sam2_interactive.utils.codec import TensorCodec


class OnnxInferenceEngine(InferenceEngine):
    def __init__(
        self,
        encoder_path: str,
        decoder_path: str,
        providers: Optional[List[str]] = None,
        codec: Optional[TensorCodec] = None,
    ) -> None:
        self.encoder_path = encoder_path
        self.decoder_path = decoder_path
        self.providers = list(providers) if providers is not None else None
        self.codec = codec if codec is not None else TensorCodec()
        self._encoder: Optional[ort.InferenceSession] = None
        self._decoder: Optional[ort.InferenceSession] = None

    @property
    def is_initialized(self) -> bool:
        return self._encoder is not None and self._decoder is not None

    def init(self) -> "OnnxInferenceEngine":
        """Load both graphs. Calling it again once loaded does nothing."""
        if self.is_initialized:
            return self
        logging.info(f"Loading encoder graph from {self.encoder_path}")
        self._encoder = ort.InferenceSession(self.encoder_path, providers=self.providers)
        logging.info(f"Loading decoder graph from {self.decoder_path}")
        self._decoder = ort.InferenceSession(self.decoder_path, providers=self.providers)
        logging.info("ONNX inference engine initialized")
        return self

    def encode(self, image_tensor: np.ndarray) -> Embeddings:
        if self._encoder is None:
            raise EngineUnavailableError(
                "The encoder session is not initialized; call .init() first."
            )
        outputs = _run(self._encoder, {"image": image_tensor})
        return self.codec.unpack_encode_outputs(outputs)

    def decode(self, request: DecodeRequest) -> Dict[str, np.ndarray]:
        if self._decoder is None:
            raise EngineUnavailableError(
                "The decoder session is not initialized; call .init() first."
            )
        feeds = self.codec.pack_decode_request(request)
        return _run(self._decoder, feeds)


def _run(session: ort.InferenceSession, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    names = [output.name for output in session.get_outputs()]
    values = session.run(names, feeds)
    return dict(zip(names, values))
