# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Supporting utilities for interactive sessions.

**transforms.py** - CoordinateMapper: scale/pad of images into the model's
square input, forward point mapping and inverse mask mapping.

**codec.py** - TensorCodec: planar packing of the encoder input, named decoder
feeds, and conversion of raw decoder outputs into rasters and scores.
"""
