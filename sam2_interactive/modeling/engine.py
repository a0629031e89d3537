# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Inference engine boundary.

The session never touches model weights or an execution runtime directly.
It talks to an InferenceEngine, which exposes the two model stages:

- encode: [1, 3, S, S] uint8 image tensor -> Embeddings
- decode: DecodeRequest -> raw named outputs
  ("masks", "iou_predictions", "low_res_masks")

Unpacking the raw decoder outputs is left to TensorCodec so that every engine
implementation is held to the same output validation.

Engines do not support aborting a running call. Callers that need a timeout
must run the session call on an executor, stop waiting for it, and discard the
session whose state may still be updated by the abandoned call.
"""

import abc
from typing import Dict

import numpy as np

from sam2_interactive.types import DecodeRequest, Embeddings


class InferenceEngine(abc.ABC):
    @abc.abstractmethod
    def encode(self, image_tensor: np.ndarray) -> Embeddings:
        """Run the feature-extraction stage on a [1, 3, S, S] uint8 tensor."""

    @abc.abstractmethod
    def decode(self, request: DecodeRequest) -> Dict[str, np.ndarray]:
        """Run the mask-decoding stage and return its raw named outputs."""
