# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
SAM2 Interactive Predictor - Click-Driven Segmentation on the Control Thread

This module provides the SAM2InteractivePredictor class, the control-side half of the
interactive segmentation pipeline. It owns everything the user interacts with (the
active image, the accumulated point prompts and the current best mask) and drives an
``InferenceWorker`` running on a background thread purely through messages.

Key Features:
- Non-blocking: every inference call is fire-and-forget, replies are applied when
  ``process_replies()`` is called from the control loop
- One-shot encoding: an image is encoded once, every click only runs the decoder
- Mask feedback: the best mask of each decode seeds the next decode
- Request correlation: replies to superseded requests are discarded

State machine:
    IDLE -> LOADING_MODELS -> READY <-> ENCODING -> IMAGE_ENCODED <-> DECODING

Switching the image returns to READY and clears points, mask and encoding.
``reset_points()`` clears points and mask but keeps the encoding and the sessions.

Example Usage:
    predictor = SAM2InteractivePredictor.from_config()
    predictor.initialize()
    predictor.set_image("cells.tif")
    ...  # call predictor.process_replies() from the event loop
    predictor.encode_image()
    predictor.add_point(512, 300, label=1)
"""

import itertools
import logging

from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
from PIL.Image import Image

from sam2_interactive.protocol import (
    DecodeMaskMessage,
    EncodeImageMessage,
    PingMessage,
    PointPrompt,
)
from sam2_interactive.utils.geometry import GeometryBox, Size, display_to_model_point
from sam2_interactive.utils.image_io import load_image
from sam2_interactive.utils.transforms import (
    SAM2Transforms,
    composite_mask_over_image,
    slice_mask_channel,
)
from sam2_interactive.worker import InferenceWorker

FOREGROUND = 1
BACKGROUND = 0


class PredictorState(str, Enum):
    IDLE = "idle"
    LOADING_MODELS = "loading_models"
    READY = "ready"
    ENCODING = "encoding"
    IMAGE_ENCODED = "image_encoded"
    DECODING = "decoding"


def select_best_candidate(scores: Sequence[float]) -> int:
    """
    Index of the highest confidence score.

    Ties resolve to the first maximum in scan order, e.g. ``[0.2, 0.91, 0.91, 0.3]``
    selects index 1.
    """
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)
    if scores.size == 0:
        raise ValueError("No mask candidates to select from")
    return int(np.argmax(scores))


class SAM2InteractivePredictor:
    """
    Control-side orchestrator of the interactive segmentation session.

    The predictor never waits on the worker. Each request method posts a message
    and moves to a busy state; ``process_replies()`` applies the replies that have
    arrived so far and moves back. Only the reply to the latest request of a kind
    is applied, so an encode that was in flight when the image changed can never
    mark the new image as encoded.
    """

    def __init__(
        self,
        worker: InferenceWorker,
        transforms: Optional[SAM2Transforms] = None,
    ) -> None:
        """
        Args:
            worker: Worker handle owned by this predictor. It is started if needed.
            transforms: Preprocessing pipeline; defaults to 1024 input, 256 masks.
        """
        self.worker = worker.start()
        self._transforms = transforms or SAM2Transforms()
        self._request_ids = itertools.count(1)
        self._pending_request_id: Optional[int] = None
        self._listeners: List[Callable[["SAM2InteractivePredictor"], None]] = []

        self.state = PredictorState.IDLE
        self.status = "Loading…"
        self.device: Optional[str] = None
        self.error: Optional[str] = None
        self._models_loaded = False

        # Active image state
        self._image: Optional[np.ndarray] = None     # padded square, display resolution
        self._pad_box: Optional[GeometryBox] = None  # content box within the padded square
        self._points: List[PointPrompt] = []
        self._best_mask: Optional[np.ndarray] = None  # flat M*M scores, fed back on next click
        self._best_score: Optional[float] = None

    @classmethod
    def from_config(cls, config_file: str = "configs/sam2_hiera_tiny_onnx.yaml", **kwargs):
        """Build the backend, worker and transforms from a Hydra config."""
        from sam2_interactive.build_sam2_interactive import build_sam2_interactive_predictor

        return build_sam2_interactive_predictor(config_file, **kwargs)

    # Read-only views

    @property
    def image(self) -> Optional[np.ndarray]:
        return self._image

    @property
    def pad_box(self) -> Optional[GeometryBox]:
        return self._pad_box

    @property
    def points(self) -> List[PointPrompt]:
        return list(self._points)

    @property
    def best_mask(self) -> Optional[np.ndarray]:
        return None if self._best_mask is None else self._best_mask.copy()

    @property
    def best_score(self) -> Optional[float]:
        return self._best_score

    @property
    def is_busy(self) -> bool:
        return self.state in (
            PredictorState.LOADING_MODELS,
            PredictorState.ENCODING,
            PredictorState.DECODING,
        )

    def add_listener(self, callback: Callable[["SAM2InteractivePredictor"], None]) -> None:
        """Register ``callback(predictor)``, called after every state or status change."""
        self._listeners.append(callback)

    # Requests

    def initialize(self) -> int:
        """Ask the worker to acquire both models and create both sessions."""
        self.error = None
        self._models_loaded = False
        return self._send(PingMessage, PredictorState.LOADING_MODELS, "Loading…")

    def set_image(self, image: Union[np.ndarray, Image, str, Path, bytes]) -> None:
        """
        Make ``image`` the active image.

        The image is grayscale-guarded and padded to a square; points, mask and
        encoding of the previous image are discarded. If the image cannot be
        decoded, the current image and all state are left untouched.

        Args:
            image: HxWxC uint8 buffer (C in 1, 3, 4), a PIL image, or an image
                file given by path or encoded bytes.

        Raises:
            ImageFormatError: If a file source cannot be decoded.
        """
        if isinstance(image, (str, Path, bytes)):
            image = load_image(image)
        padded, box = self._transforms.prepare_image(image)
        self._image = padded
        self._pad_box = box
        self._clear_prompts()
        if self.state in (
            PredictorState.ENCODING,
            PredictorState.IMAGE_ENCODED,
            PredictorState.DECODING,
        ):
            # Whatever was in flight belongs to the previous image
            self._pending_request_id = None
            self._set_state(PredictorState.READY, "Encode image")
        else:
            self._notify()

    def encode_image(self) -> int:
        """
        Send the active image to the encoder.

        Raises:
            RuntimeError: If the models are not loaded or no image is set.
        """
        if not self._models_loaded or self.state in (
            PredictorState.IDLE,
            PredictorState.LOADING_MODELS,
        ):
            raise RuntimeError("Models must be loaded with .initialize() before encoding.")
        if self._image is None:
            raise RuntimeError("An image must be set with .set_image(...) before encoding.")

        self._clear_prompts()
        tensor = self._transforms(self._image)
        return self._send(
            lambda request_id: EncodeImageMessage.from_tensor(tensor, request_id=request_id),
            PredictorState.ENCODING,
            "Encoding…",
        )

    def add_point(self, x: float, y: float, label: int = FOREGROUND) -> int:
        """
        Record a point in model input space and request a decode.

        All accumulated points are sent together with the previous best mask.

        Raises:
            RuntimeError: If the active image has not been encoded.
        """
        if self.state not in (PredictorState.IMAGE_ENCODED, PredictorState.DECODING):
            raise RuntimeError(
                "An image must be encoded with .encode_image() before mask prediction."
            )
        previous_points = self._points
        points = previous_points + [PointPrompt(x=x, y=y, label=label)]
        mask_size = self._transforms.mask_size
        prev_mask = self._best_mask
        self._points = points
        try:
            return self._send(
                lambda request_id: DecodeMaskMessage(
                    request_id=request_id,
                    points=points,
                    mask_array=prev_mask,
                    mask_shape=[1, 1, mask_size, mask_size] if prev_mask is not None else None,
                ),
                PredictorState.DECODING,
                "Decoding…",
            )
        except Exception:
            # The worker refused the request, so the click never happened
            self._points = previous_points
            raise

    def click(self, x: float, y: float, display_size: Size, primary: bool = True) -> int:
        """
        Map a click on the displayed image into model space and add it as a point.

        A primary click adds a foreground point, a secondary click a background point.
        """
        model_x, model_y = display_to_model_point(
            x, y, Size(*display_size), self._transforms.resolution
        )
        return self.add_point(model_x, model_y, FOREGROUND if primary else BACKGROUND)

    def reset_points(self) -> None:
        """Clear points and mask. Models, sessions and the image encoding are kept."""
        self._clear_prompts()
        if self.state is PredictorState.DECODING:
            self._pending_request_id = None
            self._set_state(PredictorState.IMAGE_ENCODED, "Ready. Click on image to segment")
        else:
            self._notify()

    # Outputs

    def mask_overlay(self) -> Optional[np.ndarray]:
        """RGBA overlay of the best mask at model input resolution, or None."""
        if self._best_mask is None:
            return None
        return self._transforms.postprocess_mask(self._best_mask)

    def export_cutout(self) -> Optional[np.ndarray]:
        """
        Cut the active (padded) image down to the best mask.

        Returns:
            RGBA buffer the size of the padded image, transparent outside the mask,
            or None if there is no mask yet.
        """
        if self._best_mask is None or self._image is None:
            return None
        raster = self._transforms.postprocess_mask(self._best_mask, self._image.shape[0])
        return composite_mask_over_image(self._image, raster)

    # Replies

    def process_replies(self, timeout: Optional[float] = 0.0) -> int:
        """
        Apply every reply available from the worker.

        Args:
            timeout: Seconds to wait for the first reply; 0 only drains what has
                already arrived.

        Returns:
            int: Number of replies taken off the worker's queue.
        """
        handled = 0
        reply = self.worker.get_reply(timeout)
        while reply is not None:
            self.handle_reply(reply)
            handled += 1
            reply = self.worker.get_reply(0)
        return handled

    def handle_reply(self, reply) -> None:
        if reply.request_id != self._pending_request_id:
            logging.info(
                f"Dropping stale {reply.type} reply for request {reply.request_id}"
            )
            return

        if reply.type == "loadingInProgress":
            self._set_state(PredictorState.LOADING_MODELS, "Loading model…")
        elif reply.type == "pong":
            self._pending_request_id = None
            self._models_loaded = reply.success
            self.device = reply.device
            if reply.success:
                logging.info(f"Models loaded on {reply.device}")
                self._set_state(PredictorState.READY, "Encode image")
            else:
                self._set_state(PredictorState.IDLE, "Error loading model")
        elif reply.type == "encodeImageDone":
            self._pending_request_id = None
            self._set_state(PredictorState.IMAGE_ENCODED, "Ready. Click on image to segment")
        elif reply.type == "decodeMaskResult":
            self._pending_request_id = None
            try:
                self._apply_decode_result(reply.masks.to_array(), reply.iou_predictions)
            except (ValueError, IndexError) as e:
                logging.error(f"Malformed decode result for request {reply.request_id}: {e}")
                self._apply_error(str(e))
                return
            self._set_state(PredictorState.IMAGE_ENCODED, "Ready. Click on image to segment")
        elif reply.type == "error":
            self._pending_request_id = None
            self._apply_error(reply.data)
        else:
            logging.warning(f"Ignoring unexpected {reply.type} reply")

    def _apply_decode_result(self, masks: np.ndarray, iou_predictions: np.ndarray) -> None:
        best_idx = select_best_candidate(iou_predictions)
        if masks.ndim != 4 or best_idx >= masks.shape[1]:
            raise IndexError(
                f"Best candidate {best_idx} has no mask channel in masks of shape {masks.shape}"
            )
        self._best_mask = slice_mask_channel(masks, best_idx)
        self._best_score = float(iou_predictions[best_idx])

    def _apply_error(self, message: str) -> None:
        self.error = message
        status = f"Error: {message}"
        if self.state is PredictorState.LOADING_MODELS:
            self._models_loaded = False
            self._set_state(PredictorState.IDLE, status)
        elif self.state is PredictorState.ENCODING:
            self._set_state(PredictorState.READY, status)
        elif self.state is PredictorState.DECODING:
            self._set_state(PredictorState.IMAGE_ENCODED, status)
        else:
            self._set_state(self.state, status)

    # Helpers

    def _send(self, build_message, busy_state: PredictorState, status: str) -> int:
        request_id = next(self._request_ids)
        self.worker.post(build_message(request_id=request_id))
        self._pending_request_id = request_id
        self._set_state(busy_state, status)
        return request_id

    def _clear_prompts(self) -> None:
        self._points = []
        self._best_mask = None
        self._best_score = None

    def _set_state(self, state: PredictorState, status: str) -> None:
        self.state = state
        self.status = status
        self._notify()

    def _notify(self) -> None:
        for callback in self._listeners:
            callback(self)

    def close(self) -> None:
        """Terminate the background worker. The predictor is unusable afterwards."""
        self.worker.terminate()
