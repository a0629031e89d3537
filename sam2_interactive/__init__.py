# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
sam2_interactive - Interactive Segmentation Sessions for SAM2

Segment objects in a still image by clicking points, drawing a box and
iteratively refining the result, on top of an exported two-stage SAM2 model
(an image encoder and a prompt-conditioned mask decoder).

Main Components:
- InteractionSession: owns prompts and embeddings, drives encode-once,
  decode-many and refinement
- CoordinateMapper: fits images into the model's square input and maps masks
  back
- TensorCodec: packs and unpacks the model's buffers
- EmbeddingStore: durable embedding cache keyed by image fingerprint
- InferenceEngine / OnnxInferenceEngine: the model runtime boundary

The library uses Hydra for configuration, like the model builders it
derives from.

Usage:
    from sam2_interactive import build_inference_engine, build_interactive_session

    engine = build_inference_engine()
    session = build_interactive_session(engine=engine)
    session.prepare(image)
    session.add_point(session.map_point(LabeledPoint(120, 80)))
    output = session.decode()
"""

from hydra import initialize_config_module
from hydra.core.global_hydra import GlobalHydra

if not GlobalHydra.instance().is_initialized():
    initialize_config_module("sam2_interactive", version_base="1.2")

from sam2_interactive.build_session import (  # noqa: E402
    build_embedding_store,
    build_inference_engine,
    build_interactive_session,
)
from sam2_interactive.embedding_store import (  # noqa: E402
    ByteStore,
    EmbeddingStore,
    FileByteStore,
    InMemoryByteStore,
    image_fingerprint,
)
from sam2_interactive.errors import (  # noqa: E402
    DecodeFormatError,
    EngineUnavailableError,
    InteractiveSegmentationError,
    NoPriorDecodeError,
    SessionNotPreparedError,
)
from sam2_interactive.interactive_session import InteractionSession  # noqa: E402
from sam2_interactive.modeling.engine import InferenceEngine  # noqa: E402
from sam2_interactive.types import (  # noqa: E402
    Box,
    CoordinateTransform,
    DecodeOutput,
    DecodeRequest,
    DecodeResult,
    Embeddings,
    LabeledPoint,
    LowResMask,
    Mask,
    Point,
    SessionState,
)
from sam2_interactive.utils.codec import TensorCodec  # noqa: E402
from sam2_interactive.utils.transforms import CoordinateMapper  # noqa: E402
