# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Model runtime boundary.

**engine.py** - InferenceEngine, the abstract encode/decode capability the
session depends on.

**onnx_engine.py** - OnnxInferenceEngine, running the exported SAM2 image
encoder and mask decoder graphs with ONNX Runtime.
"""
