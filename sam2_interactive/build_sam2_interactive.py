# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Factory Functions for the Interactive Segmentation Pipeline

This module assembles the pipeline pieces from Hydra configuration files:
- build_sam2_interactive(): the inference backend (models, cache, execution backends)
- build_sam2_interactive_worker(): a background worker owning a fresh backend
- build_sam2_interactive_predictor(): the control-side predictor wired to a worker
- build_sam2_interactive_hf(): same as above, selected by Hugging Face model id

Configuration files live in ``sam2_interactive/configs`` and specify:
- Model artifacts (Hub repository and encoder/decoder filenames)
- Geometry constants (model input side, mask side)
- Execution backend fallback order and the local model cache directory
- Worker queue sizing
"""

import logging

from hydra import compose
from hydra.utils import instantiate
from omegaconf import OmegaConf

from sam2_interactive.inference_backend import SAM2InferenceBackend
from sam2_interactive.sam2_interactive_predictor import SAM2InteractivePredictor
from sam2_interactive.worker import InferenceWorker

DEFAULT_CONFIG = "configs/sam2_hiera_tiny_onnx.yaml"

# Mapping of Hugging Face model IDs to the config files describing their ONNX exports
HF_MODEL_ID_TO_CONFIG = {
    "g-ronimo/sam2-tiny": DEFAULT_CONFIG,
}


def _load_config(config_file, hydra_overrides_extra):
    cfg = compose(config_name=config_file, overrides=list(hydra_overrides_extra))
    OmegaConf.resolve(cfg)
    return cfg


def build_sam2_interactive(
    config_file=DEFAULT_CONFIG,
    hydra_overrides_extra=[],
    **kwargs,
) -> SAM2InferenceBackend:
    """
    Build the inference backend described by a config file.

    Models are not acquired here; that happens on the worker thread when the
    predictor is initialised.

    Args:
        config_file (str): Config path relative to the package config module.
        hydra_overrides_extra (list): Additional Hydra overrides, e.g.
            ``["backend.execution_backends=[cpu]"]``.
        **kwargs: Passed to the backend constructor, e.g. ``session_factory``
            or ``fetcher``.

    Returns:
        SAM2InferenceBackend: Unloaded backend.
    """
    cfg = _load_config(config_file, hydra_overrides_extra)
    backend = instantiate(cfg.backend, **kwargs)
    logging.info(
        f"Execution backend order: {', '.join(backend.execution_backends)}"
    )
    return backend


def build_sam2_interactive_worker(
    config_file=DEFAULT_CONFIG,
    hydra_overrides_extra=[],
    **kwargs,
) -> InferenceWorker:
    """Build a started worker owning a freshly built backend."""
    cfg = _load_config(config_file, hydra_overrides_extra)
    return _build_worker(cfg, **kwargs).start()


def _build_worker(cfg, **kwargs) -> InferenceWorker:
    backend = instantiate(cfg.backend, **kwargs)
    return InferenceWorker(
        backend,
        queue_size=cfg.worker.queue_size,
        poll_interval=cfg.worker.poll_interval,
    )


def build_sam2_interactive_predictor(
    config_file=DEFAULT_CONFIG,
    hydra_overrides_extra=[],
    **kwargs,
) -> SAM2InteractivePredictor:
    """
    Build a predictor, its worker and its backend from one config file.

    Args:
        config_file (str): Config path relative to the package config module.
        hydra_overrides_extra (list): Additional Hydra overrides.
        **kwargs: Passed to the backend constructor.

    Returns:
        SAM2InteractivePredictor: In IDLE state; call ``initialize()`` to load models.
    """
    cfg = _load_config(config_file, hydra_overrides_extra)
    worker = _build_worker(cfg, **kwargs)
    transforms = instantiate(cfg.transforms)
    return SAM2InteractivePredictor(worker, transforms)


def build_sam2_interactive_hf(model_id, **kwargs) -> SAM2InteractivePredictor:
    """
    Build a predictor for a Hugging Face model id.

    Raises:
        KeyError: If ``model_id`` has no known config.
    """
    config_file = HF_MODEL_ID_TO_CONFIG[model_id]
    return build_sam2_interactive_predictor(config_file=config_file, **kwargs)
