# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Supporting utilities for the interactive segmentation pipeline.

**geometry.py** - pad boxes, pad-to-square and click-to-model-space mapping
**transforms.py** - pixel buffer <-> tensor conversions, mask rasterisation and compositing
**model_cache.py** - cache-first acquisition of model artifacts from the Hugging Face Hub
**image_io.py** - decoding image files into RGBA buffers
"""
