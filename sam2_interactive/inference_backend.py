# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
SAM2 Inference Backend - Encoder/Decoder Sessions for Interactive Segmentation

This module owns the two exported SAM2 models (image encoder and prompt decoder) and
the inference sessions that run them. It is meant to live on a single background
thread: nothing here is locked, and the orchestration layer guarantees that at most
one call runs at a time.

Lifecycle of each session:
    UNLOADED -> ACQUIRING -> READY      (terminal)
    UNLOADED -> ACQUIRING -> FAILED     (terminal until initialize() is called again)

Workflow:
1. ``download_models()`` acquires both artifacts, cache first
2. ``create_sessions()`` binds each model to the first execution backend that works
3. ``encode()`` runs the encoder once per image and caches its three outputs
4. ``decode()`` runs the decoder for the accumulated points, optionally seeded
   with the previous best mask

The models are treated as opaque callables taking and returning named tensors;
session objects only need ``get_inputs()``, ``get_outputs()`` and ``run()`` as
exposed by ``onnxruntime.InferenceSession``.
"""

import logging

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from sam2_interactive.debug_utils import capture_debug_state
from sam2_interactive.errors import (
    BackendUnavailableError,
    ImageNotEncodedError,
    SessionNotReadyError,
)
from sam2_interactive.utils.model_cache import ModelArtifact, ModelCache, acquire_model_bytes

# Execution backend kinds mapped to onnxruntime execution providers
EXECUTION_PROVIDERS = {
    "cuda": "CUDAExecutionProvider",
    "tensorrt": "TensorrtExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
    "dml": "DmlExecutionProvider",
    "cpu": "CPUExecutionProvider",
}

DEFAULT_EXECUTION_BACKENDS = ("cuda", "cpu")


class SessionState(str, Enum):
    UNLOADED = "unloaded"
    ACQUIRING = "acquiring"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class EncodedImageState:
    """Encoder outputs for one image, shared by every decode against that image."""

    high_res_feats_0: np.ndarray
    high_res_feats_1: np.ndarray
    image_embed: np.ndarray


@dataclass(frozen=True)
class MaskCandidate:
    index: int
    mask: np.ndarray
    iou: float


@dataclass(frozen=True)
class DecodeResult:
    """
    Raw decoder output.

    Attributes:
        masks: Mask scores of shape (1, C, M, M)
        iou_predictions: C confidence scores, one per mask channel
    """

    masks: np.ndarray
    iou_predictions: np.ndarray

    @property
    def candidates(self) -> List[MaskCandidate]:
        num_masks = self.masks.shape[1]
        return [
            MaskCandidate(i, self.masks[0, i].reshape(-1).copy(), float(self.iou_predictions[i]))
            for i in range(num_masks)
        ]


def create_onnx_session(model_bytes: bytes, backend_kind: str, load_model_format: Optional[str] = None):
    """
    Create an onnxruntime session bound to exactly one execution provider.

    onnxruntime silently falls back to CPU when an accelerated provider cannot be
    initialised, so the active provider is checked after creation and a mismatch is
    treated as a failed attempt.

    Args:
        model_bytes: Serialized model
        backend_kind: Key of ``EXECUTION_PROVIDERS``
        load_model_format: "ORT" for models in the ORT flatbuffer format, else None

    Raises:
        RuntimeError: If the provider is unavailable or not the active one.
    """
    import onnxruntime as ort

    provider = EXECUTION_PROVIDERS[backend_kind]
    if provider not in ort.get_available_providers():
        raise RuntimeError(f"{provider} is not available in this onnxruntime build")

    sess_options = ort.SessionOptions()
    if load_model_format:
        sess_options.add_session_config_entry("session.load_model_format", load_model_format)
    session = ort.InferenceSession(model_bytes, sess_options, providers=[provider])

    active = session.get_providers()
    if not active or active[0] != provider:
        raise RuntimeError(f"{provider} requested but session is running on {active}")
    return session


def _load_model_format(artifact: ModelArtifact) -> Optional[str]:
    return "ORT" if artifact.filename.endswith(".ort") else None


class SAM2InferenceBackend:
    """
    Owner of the encoder and decoder sessions and of the cached image encoding.

    The backend is an explicitly constructed handle; the worker that drives it is
    given the instance rather than reaching for any module-level state.
    """

    def __init__(
        self,
        encoder_artifact: ModelArtifact,
        decoder_artifact: ModelArtifact,
        cache: Optional[ModelCache] = None,
        execution_backends: Sequence[str] = DEFAULT_EXECUTION_BACKENDS,
        mask_size: int = 256,
        session_factory: Optional[Callable] = None,
        fetcher: Optional[Callable[[ModelArtifact], bytes]] = None,
    ) -> None:
        """
        Args:
            encoder_artifact: Image encoder model
            decoder_artifact: Prompt/mask decoder model
            cache: Local model cache; ``None`` always fetches
            execution_backends: Backend kinds to try, in order. The first that
                initialises wins; the generic CPU backend should come last.
            mask_size: Side M of the decoder's low-resolution mask input/output
            session_factory: ``(model_bytes, backend_kind, load_model_format) -> session``,
                ``create_onnx_session`` by default
            fetcher: Network fetch function passed to ``acquire_model_bytes``
        """
        unknown = [kind for kind in execution_backends if kind not in EXECUTION_PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown execution backends: {unknown}")
        if not execution_backends:
            raise ValueError("At least one execution backend is required")

        self.encoder_artifact = encoder_artifact
        self.decoder_artifact = decoder_artifact
        self.cache = cache
        self.execution_backends = tuple(execution_backends)
        self.mask_size = mask_size
        self._session_factory = session_factory or create_onnx_session
        self._fetcher = fetcher

        self._encoder_bytes: Optional[bytes] = None
        self._decoder_bytes: Optional[bytes] = None
        self._encoder_session: Optional[Tuple[object, str]] = None
        self._decoder_session: Optional[Tuple[object, str]] = None
        self._encoder_state = SessionState.UNLOADED
        self._decoder_state = SessionState.UNLOADED
        self._features: Optional[EncodedImageState] = None

    @property
    def session_states(self) -> Tuple[SessionState, SessionState]:
        """(encoder, decoder) session states."""
        return self._encoder_state, self._decoder_state

    @property
    def device(self) -> Optional[str]:
        """Backend kind of the encoder session, or None before sessions exist."""
        return self._encoder_session[1] if self._encoder_session else None

    @property
    def is_image_encoded(self) -> bool:
        return self._features is not None

    def initialize(self) -> str:
        """Acquire both models and create both sessions; returns the active backend kind."""
        self.download_models()
        return self.create_sessions()

    def download_models(self) -> None:
        """
        Acquire the encoder and decoder bytes.

        Raises:
            ModelUnavailableError: If either artifact can be neither read from the
                cache nor fetched. The failing session is left in FAILED.
        """
        self._encoder_session = None
        self._decoder_session = None
        self._features = None
        self._encoder_state = SessionState.ACQUIRING
        self._decoder_state = SessionState.ACQUIRING
        try:
            self._encoder_bytes = acquire_model_bytes(
                self.encoder_artifact, self.cache, self._fetcher
            )
        except Exception:
            self._encoder_state = self._decoder_state = SessionState.FAILED
            raise
        try:
            self._decoder_bytes = acquire_model_bytes(
                self.decoder_artifact, self.cache, self._fetcher
            )
        except Exception:
            self._decoder_state = SessionState.FAILED
            raise

    def create_session(self, model_bytes: bytes, artifact: ModelArtifact) -> Tuple[object, str]:
        """
        Try each configured execution backend in order and return the first session.

        Attempts are made lazily and one at a time so that at most one backend is
        ever live for a model.

        Returns:
            Tuple of (session, backend_kind).

        Raises:
            BackendUnavailableError: If every backend fails to initialise.
        """
        load_model_format = _load_model_format(artifact)
        for kind in self.execution_backends:
            try:
                session = self._session_factory(model_bytes, kind, load_model_format)
            except Exception as e:
                logging.warning(f"Session create failed for {artifact.name} on {kind}: {e}")
                continue
            logging.info(f"Created {artifact.name} session on {kind}")
            return session, kind
        raise BackendUnavailableError(
            f"Could not create {artifact.name} session with any of "
            f"{', '.join(self.execution_backends)}"
        )

    def create_sessions(self) -> str:
        """
        Create the encoder and decoder sessions from the acquired bytes.

        Returns:
            str: Backend kind of the encoder session.

        Raises:
            SessionNotReadyError: If the models have not been downloaded.
            BackendUnavailableError: If no backend can run one of the models.
        """
        if self._encoder_bytes is None or self._decoder_bytes is None:
            raise SessionNotReadyError("Models must be downloaded before sessions are created")

        try:
            self._encoder_session = self.create_session(self._encoder_bytes, self.encoder_artifact)
        except BackendUnavailableError:
            self._encoder_state = self._decoder_state = SessionState.FAILED
            raise
        self._encoder_state = SessionState.READY

        try:
            self._decoder_session = self.create_session(self._decoder_bytes, self.decoder_artifact)
        except BackendUnavailableError:
            self._decoder_state = SessionState.FAILED
            raise
        self._decoder_state = SessionState.READY
        return self.device

    def _get_encoder_session(self):
        if self._encoder_state is not SessionState.READY:
            raise SessionNotReadyError("Encoder session not created")
        return self._encoder_session[0]

    def _get_decoder_session(self):
        if self._decoder_state is not SessionState.READY:
            raise SessionNotReadyError("Decoder session not created")
        return self._decoder_session[0]

    def encode(self, image_tensor: np.ndarray) -> EncodedImageState:
        """
        Run the encoder once and cache its outputs for subsequent decodes.

        The three outputs are taken by position in the session's declared output
        order (high_res_feats_0, high_res_feats_1, image_embed), not by name, since
        export variants name them differently.

        Args:
            image_tensor: Float32 tensor of shape (1, 3, S, S) with values in [0, 1].

        Raises:
            SessionNotReadyError: If the encoder session does not exist.
            ValueError: If the tensor is not 1x3xSxS.
        """
        session = self._get_encoder_session()
        image_tensor = np.asarray(image_tensor, dtype=np.float32)
        if image_tensor.ndim != 4 or image_tensor.shape[:2] != (1, 3):
            raise ValueError(f"image tensor must be of size 1x3xHxW, got {image_tensor.shape}")

        # Never decode against the previous image if this encode fails
        self.reset()

        input_name = session.get_inputs()[0].name
        output_names = [output.name for output in session.get_outputs()]
        if len(output_names) < 3:
            raise RuntimeError(f"Encoder declares {len(output_names)} outputs, expected 3")

        logging.info("Computing image embeddings for the provided image...")
        results = session.run(output_names[:3], {input_name: image_tensor})
        features = EncodedImageState(
            high_res_feats_0=np.asarray(results[0]),
            high_res_feats_1=np.asarray(results[1]),
            image_embed=np.asarray(results[2]),
        )
        self._features = features
        capture_debug_state("encoder", "image_embed", features.image_embed)
        capture_debug_state("encoder", "high_res_feats_0", features.high_res_feats_0)
        capture_debug_state("encoder", "high_res_feats_1", features.high_res_feats_1)
        logging.info("Image embeddings computed.")
        return features

    def decode(self, points: Sequence, previous_mask: Optional[np.ndarray] = None) -> DecodeResult:
        """
        Decode mask candidates for the accumulated point prompts.

        Args:
            points: Objects with ``x``, ``y`` (model input space) and ``label``
                (1 = foreground, 0 = background) attributes, in click order.
            previous_mask: Best mask of the previous decode (M*M scores in any
                shape) used as a dense prompt, or None for the first click.

        Returns:
            DecodeResult: masks (1, C, M, M) and C IOU predictions.

        Raises:
            SessionNotReadyError: If the decoder session does not exist.
            ImageNotEncodedError: If no image has been encoded.
            ValueError: If there are no points or the previous mask has the wrong size.
        """
        session = self._get_decoder_session()
        if self._features is None:
            raise ImageNotEncodedError("Image not encoded")
        if len(points) == 0:
            raise ValueError("At least one point prompt is required")

        point_coords = np.array([[p.x, p.y] for p in points], dtype=np.float32)[None, ...]
        point_labels = np.array([p.label for p in points], dtype=np.float32)[None, ...]

        mask_shape = (1, 1, self.mask_size, self.mask_size)
        if previous_mask is not None:
            previous_mask = np.asarray(previous_mask, dtype=np.float32)
            if previous_mask.size != self.mask_size * self.mask_size:
                raise ValueError(
                    f"previous mask must hold {self.mask_size}x{self.mask_size} values, "
                    f"got {previous_mask.size}"
                )
            mask_input = previous_mask.reshape(mask_shape)
            has_mask_input = np.array([1], dtype=np.float32)
        else:
            mask_input = np.zeros(mask_shape, dtype=np.float32)
            has_mask_input = np.array([0], dtype=np.float32)

        inputs = {
            "image_embed": self._features.image_embed,
            "high_res_feats_0": self._features.high_res_feats_0,
            "high_res_feats_1": self._features.high_res_feats_1,
            "point_coords": point_coords,
            "point_labels": point_labels,
            "mask_input": mask_input,
            "has_mask_input": has_mask_input,
        }
        capture_debug_state("decoder", "point_coords", point_coords)
        capture_debug_state("decoder", "mask_input", mask_input)

        output_names = [output.name for output in session.get_outputs()]
        results = session.run(output_names[:2], inputs)
        masks = np.asarray(results[0], dtype=np.float32)
        iou_predictions = np.asarray(results[1], dtype=np.float32).reshape(-1)
        capture_debug_state("decoder", "masks", masks)
        capture_debug_state("decoder", "iou_predictions", iou_predictions)
        return DecodeResult(masks=masks, iou_predictions=iou_predictions)

    def reset(self) -> None:
        """Drop the cached image encoding. Sessions are kept."""
        self._features = None
