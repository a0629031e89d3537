# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Tensor Codec - Packing and Unpacking of Model Buffers

Converts between the session's Python-side values and the exact numeric
layouts consumed and produced by the two model stages.

Encoder input:
    The padded RGBA raster (S x S x 4, interleaved) becomes a planar uint8
    tensor of shape [1, 3, S, S]. Alpha is dropped and no normalization is
    applied; the exported encoder does its own preprocessing.

Decoder feeds (named):
    image_embed     [1, 256, 64, 64]    float32
    high_res_feat1  [1, 32, 256, 256]   float32
    high_res_feat2  [1, 64, 128, 128]   float32
    point_coords    [1, N, 2]           float32
    point_labels    [1, N]              int64
    boxes           [1, 4]              float32
    mask_input      [1, 1, 256, 256]    float32

Decoder outputs (named):
    masks           [1, C, H, W]        uint8 or float
    iou_predictions [1, C]              float32 in [0, 1]
    low_res_masks   [1, C, 256, 256]    float32

Output channels keep the order the engine returned them in; the codec never
re-ranks masks. Any malformed output raises DecodeFormatError and nothing
partial is returned.
"""

from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np

from sam2_interactive.errors import DecodeFormatError
from sam2_interactive.types import (
    EMBEDDING_SHAPES,
    LOW_RES_MASK_SIZE,
    DecodeRequest,
    DecodeResult,
    Embeddings,
    LowResMask,
    Mask,
)

DEFAULT_MASK_COLOR = (0, 114, 189, 255)

DECODER_OUTPUT_NAMES = ("masks", "iou_predictions", "low_res_masks")


class TensorCodec:
    def __init__(self, mask_color: Sequence[int] = DEFAULT_MASK_COLOR) -> None:
        color = tuple(int(c) for c in mask_color)
        if len(color) != 4 or any(c < 0 or c > 255 for c in color):
            raise ValueError(f"mask_color must be four values in [0, 255], got {mask_color!r}")
        self.mask_color = color

    def pack_image(self, padded: np.ndarray) -> np.ndarray:
        """
        Convert an interleaved S x S x 4 RGBA raster into a [1, 3, S, S] uint8 tensor.

        Channel c of pixel j lands at flat index c * S * S + j.
        """
        if padded.ndim != 3 or padded.shape[2] != 4 or padded.shape[0] != padded.shape[1]:
            raise ValueError(f"expected a square SxSx4 raster, got shape {padded.shape}")
        size = padded.shape[0]
        planar = np.ascontiguousarray(padded[..., :3].transpose(2, 0, 1), dtype=np.uint8)
        return planar.reshape(1, 3, size, size)

    def pack_decode_request(self, request: DecodeRequest) -> Dict[str, np.ndarray]:
        num_points = len(request.points)
        point_coords = np.array(
            [[p.x, p.y] for p in request.points], dtype=np.float32
        ).reshape(1, num_points, 2)
        point_labels = np.array(
            [p.label for p in request.points], dtype=np.int64
        ).reshape(1, num_points)
        boxes = np.array(request.box.as_xyxy(), dtype=np.float32).reshape(1, 4)

        mask_hint = np.asarray(request.mask_hint, dtype=np.float32)
        if mask_hint.size != LOW_RES_MASK_SIZE * LOW_RES_MASK_SIZE:
            raise ValueError(
                f"mask hint must hold {LOW_RES_MASK_SIZE}x{LOW_RES_MASK_SIZE} values, "
                f"got shape {mask_hint.shape}"
            )
        mask_input = np.array(mask_hint, dtype=np.float32, copy=True).reshape(
            1, 1, LOW_RES_MASK_SIZE, LOW_RES_MASK_SIZE
        )

        embeddings = request.embeddings
        return {
            "image_embed": embeddings.image_embed,
            "high_res_feat1": embeddings.high_res_feat1,
            "high_res_feat2": embeddings.high_res_feat2,
            "point_coords": point_coords,
            "point_labels": point_labels,
            "boxes": boxes,
            "mask_input": mask_input,
        }

    def unpack_encode_outputs(self, outputs: Mapping[str, np.ndarray]) -> Embeddings:
        missing = [name for name in EMBEDDING_SHAPES if name not in outputs]
        if missing:
            raise DecodeFormatError(f"encoder output is missing {missing}")
        for name, shape in EMBEDDING_SHAPES.items():
            array = np.asarray(outputs[name])
            if array.shape != shape:
                raise DecodeFormatError(
                    f"encoder output {name} has shape {list(array.shape)}, expected {list(shape)}"
                )
        return Embeddings(
            image_embed=outputs["image_embed"],
            high_res_feat1=outputs["high_res_feat1"],
            high_res_feat2=outputs["high_res_feat2"],
        )

    def convert_scores(self, iou_predictions: np.ndarray) -> List[float]:
        """Turn raw [0, 1] IoU predictions into percentages with two decimals."""
        return [round(float(value) * 100, 2) for value in np.asarray(iou_predictions).ravel()]

    def rasterize(self, mask: np.ndarray) -> np.ndarray:
        """Paint every element > 0 in the mask color; everything else stays transparent."""
        mask = np.asarray(mask)
        if mask.ndim != 2:
            raise ValueError(f"expected a 2D mask, got shape {mask.shape}")
        raster = np.zeros(mask.shape + (4,), dtype=np.uint8)
        raster[mask > 0] = self.mask_color
        return raster

    def unpack_decode_outputs(self, outputs: Mapping[str, np.ndarray]) -> DecodeResult:
        missing = [name for name in DECODER_OUTPUT_NAMES if name not in outputs]
        if missing:
            raise DecodeFormatError(f"decoder output is missing {missing}")

        masks = _drop_batch_dim(np.asarray(outputs["masks"]), "masks", spatial=True)
        iou_predictions = _drop_batch_dim(
            np.asarray(outputs["iou_predictions"]), "iou_predictions", spatial=False
        )
        low_res_masks = _drop_batch_dim(
            np.asarray(outputs["low_res_masks"]), "low_res_masks", spatial=True
        )

        count = masks.shape[0]
        if iou_predictions.shape[0] != count or low_res_masks.shape[0] != count:
            raise DecodeFormatError(
                f"decoder outputs disagree on mask count: masks={count}, "
                f"iou_predictions={iou_predictions.shape[0]}, "
                f"low_res_masks={low_res_masks.shape[0]}"
            )
        if low_res_masks.shape[1:] != (LOW_RES_MASK_SIZE, LOW_RES_MASK_SIZE):
            raise DecodeFormatError(
                f"low_res_masks must be {LOW_RES_MASK_SIZE}x{LOW_RES_MASK_SIZE}, "
                f"got {list(low_res_masks.shape[1:])}"
            )

        scores = self.convert_scores(iou_predictions)
        mask_results = [
            Mask(raster=self.rasterize(masks[i]), score=scores[i]) for i in range(count)
        ]
        low_res_results = []
        for i in range(count):
            data = np.array(low_res_masks[i], dtype=np.float32, copy=True)
            low_res_results.append(
                LowResMask(data=data, raster=self.rasterize(data), score=scores[i])
            )
        return DecodeResult(masks=mask_results, scores=scores, low_res_masks=low_res_results)


def _drop_batch_dim(array: np.ndarray, name: str, spatial: bool) -> np.ndarray:
    """Accept [1, C, ...] or [C, ...]; return [C, ...]."""
    per_item_dims = 2 if spatial else 0
    expected: Tuple[int, ...] = (per_item_dims + 1, per_item_dims + 2)
    if array.ndim not in expected:
        raise DecodeFormatError(
            f"{name} must have {expected[0]} or {expected[1]} dimensions, "
            f"got shape {list(array.shape)}"
        )
    if array.ndim == expected[1]:
        if array.shape[0] != 1:
            raise DecodeFormatError(f"{name} batch dimension must be 1, got {array.shape[0]}")
        array = array[0]
    return array
