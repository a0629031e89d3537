# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Data Model for Interactive Segmentation Sessions

Plain value types shared by the coordinate mapper, the tensor codec, the
inference engine boundary and the interaction session.

Coordinate spaces:
- Original space: pixel coordinates of the image handed to prepare().
- Model space: the fixed square (target_size x target_size) coordinate system
  the inference engine operates in.

Point prompts and boxes stored on a session are always in model space. Use
CoordinateTransform.to_model() (or InteractionSession.map_point) to convert
clicks made on the original image.

Buffer shapes (fixed by the exported two-stage model):
- image_embed:    [1, 256, 64, 64]   float32
- high_res_feat1: [1, 32, 256, 256]  float32
- high_res_feat2: [1, 64, 128, 128]  float32
- mask hint / low-res masks: [256, 256] float32 per channel
"""

import enum
import io
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from sam2_interactive.errors import DecodeFormatError

IMAGE_EMBED_SHAPE = (1, 256, 64, 64)
HIGH_RES_FEAT1_SHAPE = (1, 32, 256, 256)
HIGH_RES_FEAT2_SHAPE = (1, 64, 128, 128)
LOW_RES_MASK_SIZE = 256

EMBEDDING_SHAPES = {
    "image_embed": IMAGE_EMBED_SHAPE,
    "high_res_feat1": HIGH_RES_FEAT1_SHAPE,
    "high_res_feat2": HIGH_RES_FEAT2_SHAPE,
}


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class LabeledPoint(Point):
    """A point prompt. label 1 marks foreground, label 0 marks background."""

    label: int = 1

    def __post_init__(self):
        if self.label not in (0, 1):
            raise ValueError(f"point label must be 0 or 1, got {self.label!r}")


@dataclass(frozen=True)
class Box:
    """Box prompt in model space. A box whose corners coincide means "no box"."""

    top_left: Point
    bottom_right: Point

    @classmethod
    def empty(cls) -> "Box":
        return cls(Point(0.0, 0.0), Point(0.0, 0.0))

    @property
    def is_empty(self) -> bool:
        return self.top_left == self.bottom_right

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return (
            self.top_left.x,
            self.top_left.y,
            self.bottom_right.x,
            self.bottom_right.y,
        )


@dataclass(frozen=True, eq=False)
class Embeddings:
    """
    Features produced once per image by the encoder stage.

    The arrays are coerced to float32, checked against their fixed shapes and
    made read-only, so one instance can be shared by every decode of the image
    without being copied.
    """

    image_embed: np.ndarray
    high_res_feat1: np.ndarray
    high_res_feat2: np.ndarray

    def __post_init__(self):
        for name, shape in EMBEDDING_SHAPES.items():
            array = np.asarray(getattr(self, name), dtype=np.float32)
            flat = array.ndim == 1 and array.size == int(np.prod(shape))
            if array.shape != shape and not flat:
                raise DecodeFormatError(
                    f"{name} must have shape {list(shape)} or be a flat buffer of "
                    f"{int(np.prod(shape))} values, got array of shape {list(array.shape)}"
                )
            array = np.array(array.reshape(shape), dtype=np.float32, copy=True)
            array.setflags(write=False)
            object.__setattr__(self, name, array)

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        np.savez(
            buffer,
            image_embed=self.image_embed,
            high_res_feat1=self.high_res_feat1,
            high_res_feat2=self.high_res_feat2,
        )
        return buffer.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Embeddings":
        with np.load(io.BytesIO(data), allow_pickle=False) as archive:
            missing = [name for name in EMBEDDING_SHAPES if name not in archive.files]
            if missing:
                raise DecodeFormatError(f"serialized embeddings lack {missing}")
            return cls(
                image_embed=archive["image_embed"],
                high_res_feat1=archive["high_res_feat1"],
                high_res_feat2=archive["high_res_feat2"],
            )


@dataclass(frozen=True, eq=False)
class DecodeRequest:
    """Complete, self-contained input of a single decode call."""

    embeddings: Embeddings
    points: Tuple[LabeledPoint, ...]
    box: Box
    mask_hint: np.ndarray


@dataclass(eq=False)
class Mask:
    """Binary-alpha RGBA raster (H x W x 4, uint8) and its score in percent."""

    raster: np.ndarray
    score: float


@dataclass(eq=False)
class LowResMask:
    """Raw 256x256 logits, their raster rendering and score; fed back by refine()."""

    data: np.ndarray
    raster: np.ndarray
    score: float


@dataclass(eq=False)
class DecodeResult:
    """Unpacked decoder output in model space, in the order the engine returned it."""

    masks: List[Mask]
    scores: List[float]
    low_res_masks: List[LowResMask]


@dataclass(eq=False)
class DecodeOutput:
    """
    What InteractionSession.decode()/refine() hand back.

    masks are copies mapped to original image space; result is the model-space
    DecodeResult the session keeps as refinement basis.
    """

    masks: List[Mask]
    result: DecodeResult = field(repr=False)


@dataclass(frozen=True)
class CoordinateTransform:
    """
    Scale/pad mapping between original image space and model space.

    Forward mapping is model = original * scale + offset. The transform is
    computed once per prepared image.
    """

    scale: float
    offset_x: int
    offset_y: int
    original_width: int
    original_height: int
    scaled_width: int
    scaled_height: int
    target_size: int

    def to_model(self, x: float, y: float) -> Point:
        return Point(x * self.scale + self.offset_x, y * self.scale + self.offset_y)

    def to_original(self, x: float, y: float) -> Point:
        return Point((x - self.offset_x) / self.scale, (y - self.offset_y) / self.scale)

    def map_box(self, box: Box) -> Box:
        return Box(
            self.to_model(box.top_left.x, box.top_left.y),
            self.to_model(box.bottom_right.x, box.bottom_right.y),
        )


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    PREPARED = "prepared"
    DECODED = "decoded"
    REFINING = "refining"
