# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Coordinate mapping between original images and the model's square input.

The encoder consumes a fixed target_size x target_size image. Arbitrary images
are fitted into it by scaling the longer side to exactly target_size, keeping
the aspect ratio, and centering the result on an opaque black canvas. The
resulting CoordinateTransform is used in both directions:

- forward, for prompts: model = original * scale + offset
- inverse, for masks: crop the scaled region out of a model-space mask and
  resize it to the original width and height
"""

import math
from typing import Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image

from sam2_interactive.types import CoordinateTransform

FILL_COLOR = (0, 0, 0, 255)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _to_rgba_image(image: Union[np.ndarray, Image.Image]) -> Image.Image:
    if isinstance(image, Image.Image):
        return image.convert("RGBA")
    if isinstance(image, np.ndarray):
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (3, 4)):
            raise ValueError(
                f"image array must be HxW, HxWx3 or HxWx4, got shape {image.shape}"
            )
        return Image.fromarray(np.ascontiguousarray(image, dtype=np.uint8)).convert("RGBA")
    raise NotImplementedError("Image format not supported")


class CoordinateMapper:
    def __init__(self, target_size: int = 1024) -> None:
        if isinstance(target_size, bool) or not isinstance(target_size, int) or target_size <= 0:
            raise ValueError(f"target_size must be a positive integer, got {target_size!r}")
        self.target_size = target_size

    def compute_transform(self, width: int, height: int) -> CoordinateTransform:
        """
        Fit a width x height image into the square target.

        The longer side maps exactly onto target_size; the shorter side is
        rounded to the nearest pixel (never below one) and centered with
        integer offsets.
        Square images go through the same arithmetic and end up with zero
        offsets.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"image size must be positive, got {width}x{height}")
        target = self.target_size
        scale = target / max(width, height)
        scaled_width = max(1, _round_half_up(width * scale))
        scaled_height = max(1, _round_half_up(height * scale))
        return CoordinateTransform(
            scale=scale,
            offset_x=(target - scaled_width) // 2,
            offset_y=(target - scaled_height) // 2,
            original_width=int(width),
            original_height=int(height),
            scaled_width=scaled_width,
            scaled_height=scaled_height,
            target_size=target,
        )

    def prepare_image(
        self, image: Union[np.ndarray, Image.Image]
    ) -> Tuple[np.ndarray, CoordinateTransform]:
        """
        Scale and pad an image into the model's square input.

        Args:
            image (np.ndarray or PIL.Image): HxW, HxWx3 or HxWx4 uint8 array,
                or any PIL image.

        Returns:
            (padded, transform): padded is a target_size x target_size x 4
            uint8 RGBA array, black and opaque outside the scaled image region.
        """
        rgba = _to_rgba_image(image)
        width, height = rgba.size
        transform = self.compute_transform(width, height)

        canvas = Image.new("RGBA", (self.target_size, self.target_size), FILL_COLOR)
        resized = rgba.resize(
            (transform.scaled_width, transform.scaled_height),
            resample=Image.Resampling.BILINEAR,
        )
        # Composite instead of paste so transparent source pixels land on black.
        canvas.alpha_composite(resized, dest=(transform.offset_x, transform.offset_y))
        return np.asarray(canvas, dtype=np.uint8).copy(), transform

    @torch.no_grad()
    def postprocess_mask(
        self, raster: np.ndarray, transform: CoordinateTransform
    ) -> np.ndarray:
        """
        Map a model-space RGBA mask raster back to original image space.

        The scaled image region is cropped out and resized to the original
        size. Only the alpha plane is interpolated; visible pixels keep the
        mask's color, so edges stay clean while the outline is resampled.
        """
        if raster.ndim != 3 or raster.shape[2] != 4:
            raise ValueError(f"mask raster must be HxWx4, got shape {raster.shape}")

        target = transform.target_size
        alpha = torch.from_numpy(np.ascontiguousarray(raster[..., 3], dtype=np.float32))
        alpha = alpha[None, None, ...]
        if tuple(alpha.shape[-2:]) != (target, target):
            alpha = F.interpolate(alpha, (target, target), mode="bilinear", align_corners=False)

        alpha = alpha[
            ...,
            transform.offset_y : transform.offset_y + transform.scaled_height,
            transform.offset_x : transform.offset_x + transform.scaled_width,
        ]
        alpha = F.interpolate(
            alpha,
            (transform.original_height, transform.original_width),
            mode="bilinear",
            align_corners=False,
        )
        alpha = alpha[0, 0].round().clamp(0, 255).to(torch.uint8).numpy()

        color = _mask_color(raster)
        out = np.zeros((transform.original_height, transform.original_width, 4), dtype=np.uint8)
        visible = alpha > 0
        out[visible, :3] = color
        out[..., 3] = alpha
        return out


def _mask_color(raster: np.ndarray) -> np.ndarray:
    opaque = raster[..., 3] > 0
    if not opaque.any():
        return np.zeros(3, dtype=np.uint8)
    return raster[opaque][0, :3]
