import numpy as np
import pytest

from sam2_interactive.errors import (
    BackendUnavailableError,
    ImageNotEncodedError,
    ModelUnavailableError,
    SessionNotReadyError,
)
from sam2_interactive.inference_backend import SAM2InferenceBackend, SessionState
from sam2_interactive.protocol import PointPrompt

from conftest import MASK_SIZE, FakeFetcher, FakeSessionFactory, make_encoder_session


def image_tensor(value=0.5, side=8):
    return np.full((1, 3, side, side), value, dtype=np.float32)


class TestInitialization:
    def test_initial_state(self, backend):
        assert backend.session_states == (SessionState.UNLOADED, SessionState.UNLOADED)
        assert backend.device is None
        assert not backend.is_image_encoded

    def test_initialize_prefers_accelerated_backend(self, backend, session_factory):
        assert backend.initialize() == "cuda"
        assert backend.session_states == (SessionState.READY, SessionState.READY)
        assert [kind for _, kind, _ in session_factory.attempts] == ["cuda", "cuda"]

    def test_falls_back_to_cpu(self, backend):
        backend._session_factory = FakeSessionFactory(available=("cpu",))
        assert backend.initialize() == "cpu"
        assert backend.device == "cpu"
        assert backend.session_states == (SessionState.READY, SessionState.READY)

    def test_attempts_are_lazy_and_ordered(self, backend):
        factory = FakeSessionFactory(available=("cuda", "cpu"))
        backend._session_factory = factory
        backend.initialize()
        # cpu is never tried once cuda succeeded
        assert all(kind == "cuda" for _, kind, _ in factory.attempts)

    def test_all_backends_failing_is_fatal(self, backend):
        backend._session_factory = FakeSessionFactory(available=())
        with pytest.raises(BackendUnavailableError, match="cuda, cpu"):
            backend.initialize()
        assert backend.session_states == (SessionState.FAILED, SessionState.FAILED)

    def test_model_fetch_failure_is_fatal(self, encoder_artifact, decoder_artifact, session_factory):
        backend = SAM2InferenceBackend(
            encoder_artifact,
            decoder_artifact,
            session_factory=session_factory,
            fetcher=FakeFetcher(fail=True),
        )
        with pytest.raises(ModelUnavailableError):
            backend.initialize()
        assert backend.session_states == (SessionState.FAILED, SessionState.FAILED)
        assert session_factory.attempts == []

    def test_retry_after_failure(self, backend):
        backend._session_factory = FakeSessionFactory(available=())
        with pytest.raises(BackendUnavailableError):
            backend.initialize()
        backend._session_factory = FakeSessionFactory(available=("cpu",))
        assert backend.initialize() == "cpu"

    def test_ort_format_is_requested_for_ort_artifacts(self, backend, session_factory):
        backend.initialize()
        formats = {model_bytes: fmt for model_bytes, _, fmt in session_factory.attempts}
        assert formats == {b"encoder-bytes": "ORT", b"decoder-bytes": None}

    def test_create_sessions_requires_downloaded_models(self, backend):
        with pytest.raises(SessionNotReadyError):
            backend.create_sessions()

    def test_unknown_backend_kind_is_rejected(self, encoder_artifact, decoder_artifact):
        with pytest.raises(ValueError):
            SAM2InferenceBackend(encoder_artifact, decoder_artifact, execution_backends=("webgpu",))

    def test_models_are_cached(self, backend, model_cache, fetcher):
        backend.initialize()
        backend.initialize()
        assert fetcher.calls == ["encoder.ort", "decoder.onnx"]
        assert model_cache.get("decoder.onnx") == b"decoder-bytes"


class TestEncode:
    def test_encode_before_sessions_fails(self, backend):
        with pytest.raises(SessionNotReadyError):
            backend.encode(image_tensor())

    def test_outputs_are_taken_by_position(self, ready_backend, session_factory):
        # Output names differ from the canonical ones; position decides
        session_factory.encoder = make_encoder_session(("a", "b", "c"))
        ready_backend._encoder_session = (session_factory.encoder, "cuda")

        features = ready_backend.encode(image_tensor(0.25))

        assert features.high_res_feats_0.shape == (1, 32, 8, 8)
        assert features.high_res_feats_1.shape == (1, 64, 4, 4)
        assert features.image_embed.shape == (1, 256, 2, 2)
        assert ready_backend.is_image_encoded

    def test_input_fed_under_declared_name(self, ready_backend, session_factory):
        tensor = image_tensor()
        ready_backend.encode(tensor)
        (feed,) = session_factory.encoder.calls
        assert list(feed) == ["image"]
        np.testing.assert_array_equal(feed["image"], tensor)

    def test_bad_shape_is_rejected(self, ready_backend):
        with pytest.raises(ValueError):
            ready_backend.encode(np.zeros((1, 4, 8, 8), dtype=np.float32))

    def test_new_encode_replaces_state(self, ready_backend):
        first = ready_backend.encode(image_tensor(0.1))
        second = ready_backend.encode(image_tensor(0.9))
        assert first is not second
        assert ready_backend._features is second
        assert second.image_embed.mean() == pytest.approx(0.9)

    def test_failed_encode_clears_previous_state(self, ready_backend, session_factory):
        ready_backend.encode(image_tensor())

        def broken(feed):
            raise RuntimeError("boom")

        session_factory.encoder._compute = broken
        with pytest.raises(RuntimeError):
            ready_backend.encode(image_tensor())
        assert not ready_backend.is_image_encoded


class TestDecode:
    points = [PointPrompt(x=10, y=20, label=1), PointPrompt(x=30.5, y=40, label=0)]

    def test_decode_before_encode_fails(self, ready_backend):
        with pytest.raises(ImageNotEncodedError):
            ready_backend.decode(self.points)

    def test_decode_before_sessions_fails(self, backend):
        with pytest.raises(SessionNotReadyError):
            backend.decode(self.points)

    def test_requires_points(self, ready_backend):
        ready_backend.encode(image_tensor())
        with pytest.raises(ValueError):
            ready_backend.decode([])

    def test_inputs_without_previous_mask(self, ready_backend, session_factory):
        features = ready_backend.encode(image_tensor())
        result = ready_backend.decode(self.points)

        (feed,) = session_factory.decoder.calls
        assert feed["point_coords"].shape == (1, 2, 2)
        np.testing.assert_array_equal(feed["point_coords"][0], [[10, 20], [30.5, 40]])
        assert feed["point_labels"].dtype == np.float32
        np.testing.assert_array_equal(feed["point_labels"], [[1, 0]])
        assert feed["mask_input"].shape == (1, 1, MASK_SIZE, MASK_SIZE)
        assert not feed["mask_input"].any()
        np.testing.assert_array_equal(feed["has_mask_input"], [0])
        assert feed["image_embed"] is features.image_embed
        assert feed["high_res_feats_0"] is features.high_res_feats_0
        assert feed["high_res_feats_1"] is features.high_res_feats_1

        assert result.masks.shape == (1, 3, MASK_SIZE, MASK_SIZE)
        np.testing.assert_allclose(result.iou_predictions, [0.2, 0.91, 0.91])

    def test_previous_mask_is_fed_back(self, ready_backend, session_factory):
        ready_backend.encode(image_tensor())
        previous = np.linspace(-1, 1, MASK_SIZE * MASK_SIZE, dtype=np.float32)
        ready_backend.decode(self.points, previous)

        (feed,) = session_factory.decoder.calls
        assert feed["mask_input"].shape == (1, 1, MASK_SIZE, MASK_SIZE)
        np.testing.assert_array_equal(feed["mask_input"].reshape(-1), previous)
        np.testing.assert_array_equal(feed["has_mask_input"], [1])

    def test_mis_sized_previous_mask(self, ready_backend):
        ready_backend.encode(image_tensor())
        with pytest.raises(ValueError):
            ready_backend.decode(self.points, np.zeros(10, dtype=np.float32))

    def test_candidates(self, ready_backend):
        ready_backend.encode(image_tensor())
        candidates = ready_backend.decode(self.points).candidates
        assert [c.index for c in candidates] == [0, 1, 2]
        assert [c.iou for c in candidates] == pytest.approx([0.2, 0.91, 0.91])
        assert candidates[1].mask.shape == (MASK_SIZE * MASK_SIZE,)

    def test_reset_requires_new_encode(self, ready_backend):
        ready_backend.encode(image_tensor())
        ready_backend.reset()
        with pytest.raises(ImageNotEncodedError):
            ready_backend.decode(self.points)
