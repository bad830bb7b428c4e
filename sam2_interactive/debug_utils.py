# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Debug Utilities for Inspecting the Encode/Decode Pipeline

This module provides tools for capturing the tensors that flow through the inference
backend and rendering them for offline inspection. Capture is off by default and
costs a single flag check per call when disabled.

Captured components:
- ``encoder``: the three encoder outputs (high-res features and image embedding)
- ``decoder``: point prompts, mask input, mask candidates and IOU predictions

Usage:
    from sam2_interactive.debug_utils import enable_debug_mode, visualize_debug_states

    enable_debug_mode()
    # ... encode an image and decode some clicks ...
    visualize_debug_states(save_path="debug_output/")
"""

import os

from collections import defaultdict
from typing import Any, Dict, Optional, Sequence

import numpy as np
import torch
import matplotlib.pyplot as plt
import seaborn as sns


class DebugStateCapture:
    """
    Central registry for tensors captured from the inference backend.

    Captured data is copied to host numpy arrays so that later inference calls
    cannot mutate what was recorded.
    """

    def __init__(self):
        self.states = defaultdict(dict)
        self.enabled = False

    def enable(self):
        self.enabled = True

    def disable(self):
        """Disable capture and clear stored states."""
        self.enabled = False
        self.clear()

    def clear(self):
        self.states.clear()

    def capture(self, component_name: str, state_name: str, data: Any,
                metadata: Optional[Dict] = None):
        """
        Capture a tensor state from a pipeline component.

        Args:
            component_name: Name of the component (e.g. 'encoder', 'decoder')
            state_name: Name of the specific state (e.g. 'image_embed', 'masks')
            data: numpy array or torch tensor to capture
            metadata: Additional metadata about the captured state
        """
        if not self.enabled:
            return

        if isinstance(data, torch.Tensor):
            data = data.detach().cpu().numpy()
        data = np.array(data, copy=True)

        self.states[component_name][state_name] = {
            'data': data,
            'shape': tuple(data.shape),
            'dtype': data.dtype,
            'metadata': metadata or {}
        }

    def get_state(self, component_name: str, state_name: str = None):
        """Retrieve captured state(s) for a component."""
        if state_name is None:
            return self.states.get(component_name, {})
        return self.states.get(component_name, {}).get(state_name)

    def get_all_states(self):
        return dict(self.states)


# Global debug capture instance
_debug_capture = DebugStateCapture()


def enable_debug_mode():
    """Enable global debug capture."""
    _debug_capture.enable()


def disable_debug_mode():
    _debug_capture.disable()


def capture_debug_state(component_name: str, state_name: str, data: Any,
                        metadata: Optional[Dict] = None):
    """Capture debug state using the global capture instance."""
    _debug_capture.capture(component_name, state_name, data, metadata)


def get_debug_states():
    return _debug_capture.get_all_states()


def clear_debug_states():
    _debug_capture.clear()


def is_debug_enabled():
    return _debug_capture.enabled


class SAM2Visualizer:
    """
    Renders captured decoder states to image files.

    Figures are closed after saving. The matplotlib backend is left to the caller;
    use a non-interactive one (e.g. Agg) when rendering off the main thread.
    """

    def __init__(self, figsize_base=(12, 4), dpi=100):
        self.figsize_base = figsize_base
        self.dpi = dpi

    def visualize_mask_candidates(self, masks: np.ndarray, iou_predictions: Sequence[float],
                                  save_path: Optional[str] = None):
        """
        Plot every decoder mask candidate side by side, titled with its IOU score.

        Args:
            masks: Decoder output of shape (1, C, M, M) or (C, M, M)
            iou_predictions: C confidence scores
            save_path: Directory to write ``mask_candidates.png`` into

        Returns:
            The matplotlib figure.
        """
        masks = np.asarray(masks)
        if masks.ndim == 4:
            masks = masks[0]
        scores = np.asarray(iou_predictions, dtype=np.float32).reshape(-1)
        best_idx = int(np.argmax(scores)) if len(scores) else -1

        num_masks = masks.shape[0]
        fig, axes = plt.subplots(1, num_masks, figsize=self.figsize_base, dpi=self.dpi,
                                 squeeze=False)
        for i, ax in enumerate(axes[0]):
            ax.imshow(masks[i] > 0, cmap='gray')
            marker = " (best)" if i == best_idx else ""
            ax.set_title(f"Mask {i}: IOU {scores[i]:.3f}{marker}")
            ax.axis('off')

        fig.tight_layout()
        if save_path:
            os.makedirs(save_path, exist_ok=True)
            fig.savefig(os.path.join(save_path, "mask_candidates.png"),
                        dpi=self.dpi, bbox_inches='tight')
        plt.close(fig)
        return fig

    def visualize_mask_scores(self, mask: np.ndarray, save_path: Optional[str] = None,
                              name: str = "mask_scores"):
        """Heatmap of raw mask scores, centred on the zero decision boundary."""
        mask = np.asarray(mask, dtype=np.float32)
        if mask.ndim == 1:
            side = int(round(np.sqrt(mask.size)))
            mask = mask.reshape(side, side)
        mask = np.squeeze(mask)

        fig, ax = plt.subplots(1, 1, figsize=(6, 5), dpi=self.dpi)
        sns.heatmap(mask, ax=ax, center=0.0, cmap='RdBu_r', xticklabels=False,
                    yticklabels=False)
        ax.set_title(name)

        fig.tight_layout()
        if save_path:
            os.makedirs(save_path, exist_ok=True)
            fig.savefig(os.path.join(save_path, f"{name}.png"), dpi=self.dpi,
                        bbox_inches='tight')
        plt.close(fig)
        return fig


def visualize_debug_states(debug_states: Optional[Dict] = None,
                           save_path: str = "debug_output"):
    """
    Render all captured decoder states.

    Args:
        debug_states: States as returned by ``get_debug_states``; the global capture by default
        save_path: Output directory

    Returns:
        List of written file names.
    """
    debug_states = debug_states if debug_states is not None else get_debug_states()
    visualizer = SAM2Visualizer()
    written = []

    decoder = debug_states.get('decoder', {})
    if 'masks' in decoder and 'iou_predictions' in decoder:
        visualizer.visualize_mask_candidates(decoder['masks']['data'],
                                             decoder['iou_predictions']['data'],
                                             save_path=save_path)
        written.append("mask_candidates.png")
    if 'mask_input' in decoder:
        visualizer.visualize_mask_scores(decoder['mask_input']['data'],
                                         save_path=save_path, name="mask_input")
        written.append("mask_input.png")
    return written
