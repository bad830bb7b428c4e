"""
Pytest configuration and shared fixtures for sam2_interactive tests.

Real ONNX models are never loaded: sessions are replaced by small fakes exposing
the onnxruntime ``get_inputs`` / ``get_outputs`` / ``run`` surface.
"""
import time
from types import SimpleNamespace

import matplotlib
import numpy as np
import pytest

matplotlib.use("Agg")

from sam2_interactive.inference_backend import SAM2InferenceBackend
from sam2_interactive.utils.model_cache import ModelArtifact, ModelCache

MASK_SIZE = 256


class FakeSession:
    """Stand-in for onnxruntime.InferenceSession with fixed input/output names."""

    def __init__(self, input_names, output_names, compute):
        self._inputs = [SimpleNamespace(name=n) for n in input_names]
        self._outputs = [SimpleNamespace(name=n) for n in output_names]
        self._compute = compute
        self.calls = []

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def run(self, output_names, input_feed):
        self.calls.append(dict(input_feed))
        outputs = self._compute(input_feed)
        return [outputs[name] for name in output_names]


def make_encoder_session(output_names=("high_res_feats_0", "high_res_feats_1", "image_embed")):
    def compute(feed):
        image = feed["image"]
        mean = float(image.mean())
        return {
            output_names[0]: np.full((1, 32, 8, 8), mean, dtype=np.float32),
            output_names[1]: np.full((1, 64, 4, 4), mean, dtype=np.float32),
            output_names[2]: np.full((1, 256, 2, 2), mean, dtype=np.float32),
        }

    return FakeSession(["image"], list(output_names), compute)


def make_decoder_session(iou=(0.2, 0.91, 0.91), mask_size=MASK_SIZE):
    state = SimpleNamespace(iou=list(iou))

    def compute(feed):
        num_masks = len(state.iou)
        masks = np.empty((1, num_masks, mask_size, mask_size), dtype=np.float32)
        for i in range(num_masks):
            # Left half positive on channel 1 only, so the chosen channel is recognisable
            masks[0, i] = -1.0
            if i == 1:
                masks[0, i, :, : mask_size // 2] = 5.0
        return {
            "masks": masks,
            "iou_predictions": np.array([state.iou], dtype=np.float32),
        }

    session = FakeSession(
        [
            "image_embed",
            "high_res_feats_0",
            "high_res_feats_1",
            "point_coords",
            "point_labels",
            "mask_input",
            "has_mask_input",
        ],
        ["masks", "iou_predictions"],
        compute,
    )
    session.state = state
    return session


class FakeSessionFactory:
    """Creates fake sessions, failing for every backend kind not in ``available``."""

    def __init__(self, available=("cpu",), decoder_iou=(0.2, 0.91, 0.91)):
        self.available = set(available)
        self.attempts = []
        self.encoder = make_encoder_session()
        self.decoder = make_decoder_session(decoder_iou)

    def __call__(self, model_bytes, backend_kind, load_model_format=None):
        self.attempts.append((model_bytes, backend_kind, load_model_format))
        if backend_kind not in self.available:
            raise RuntimeError(f"{backend_kind} unavailable")
        return self.encoder if model_bytes == b"encoder-bytes" else self.decoder


class FakeFetcher:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def __call__(self, artifact):
        self.calls.append(artifact.filename)
        if self.fail:
            raise ConnectionError("network unreachable")
        return f"{artifact.name}-bytes".encode()


@pytest.fixture
def encoder_artifact():
    return ModelArtifact(name="encoder", repo_id="test/sam2", filename="encoder.ort")


@pytest.fixture
def decoder_artifact():
    return ModelArtifact(name="decoder", repo_id="test/sam2", filename="decoder.onnx")


@pytest.fixture
def model_cache(tmp_path):
    return ModelCache(tmp_path / "cache")


@pytest.fixture
def session_factory():
    return FakeSessionFactory(available=("cuda", "cpu"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def backend(encoder_artifact, decoder_artifact, model_cache, session_factory, fetcher):
    return SAM2InferenceBackend(
        encoder_artifact,
        decoder_artifact,
        cache=model_cache,
        execution_backends=("cuda", "cpu"),
        mask_size=MASK_SIZE,
        session_factory=session_factory,
        fetcher=fetcher,
    )


@pytest.fixture
def ready_backend(backend):
    backend.initialize()
    return backend


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll ``predicate`` until it returns truthy or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())
