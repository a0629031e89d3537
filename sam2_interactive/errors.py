# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Error taxonomy for interactive segmentation sessions.

State-precondition errors (SessionNotPreparedError, NoPriorDecodeError) are
programmer errors and are never retried internally. DecodeFormatError is fatal
to the single call that produced it. Embedding store failures never surface
here: the session logs them and falls back to encoding.
"""


class InteractiveSegmentationError(Exception):
    """Base class for all errors raised by sam2_interactive."""


class SessionNotPreparedError(InteractiveSegmentationError, RuntimeError):
    """Raised when an operation needs embeddings but prepare() has not run."""


class NoPriorDecodeError(InteractiveSegmentationError, RuntimeError):
    """Raised when refine() is called before any decode()."""


class DecodeFormatError(InteractiveSegmentationError, ValueError):
    """Raised when the engine returns missing or malformed tensors."""


class EngineUnavailableError(InteractiveSegmentationError, RuntimeError):
    """Raised when encode/decode is called on an engine that is not initialized."""
