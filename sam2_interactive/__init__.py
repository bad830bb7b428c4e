# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
SAM2 Interactive - Click-Driven Image Segmentation with Exported SAM2 Models

This library runs the SAM2 image encoder and prompt decoder (exported to ONNX/ORT) on
a background thread and drives them from a control thread through messages. An image
is encoded once; every click then decodes a fresh set of mask candidates, seeded with
the best mask of the previous click.

Main Components:
- SAM2InteractivePredictor: control-side state machine (image, points, best mask)
- InferenceWorker: background thread processing requests in arrival order
- SAM2InferenceBackend: model acquisition, execution backend fallback, encode/decode
- utils.geometry / utils.transforms: pad-to-square geometry and tensor conversions

The library uses Hydra for configuration management; model artifacts, geometry
constants and the execution backend order live in YAML files under
sam2_interactive/configs.

Usage:
    from sam2_interactive.build_sam2_interactive import build_sam2_interactive_predictor

    predictor = build_sam2_interactive_predictor()
    predictor.initialize()
"""

from hydra import initialize_config_module
from hydra.core.global_hydra import GlobalHydra

# Register the package config module so compose() can find configs/*.yaml
if not GlobalHydra.instance().is_initialized():
    initialize_config_module("sam2_interactive", version_base="1.2")
