"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from scenecaption.config import Settings
from scenecaption.ml.model_manager import MODEL_REGISTRY, OnnxModelManager, get_spec

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/scenecaption_test_models",
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["flower_classifier_mobilenetv2"]
        assert spec.name == "flower_classifier_mobilenetv2"
        assert spec.input_size == 224
        assert spec.outputs_logits is True

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_spec("nonexistent_model")

    def test_registry_names_match_keys(self) -> None:
        for name, spec in MODEL_REGISTRY.items():
            assert spec.name == name

    def test_default_model_is_registered(self) -> None:
        assert Settings().classification_model in MODEL_REGISTRY


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/scenecaption_test_models/flowers/flower_classifier_mobilenetv2.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        path = mgr.ensure_downloaded("flower_classifier_mobilenetv2")

        mock_download.assert_called_once_with(
            repo_id="scenecaption/scenecaption-models",
            filename="flower_classifier_mobilenetv2.onnx",
            subfolder="flowers",
            local_dir="/tmp/scenecaption_test_models",
        )
        assert path == Path("/tmp/scenecaption_test_models/flowers/flower_classifier_mobilenetv2.onnx")

    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "flower_classifier_mobilenetv2.onnx"
        model_file.touch()

        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["flower_classifier_mobilenetv2"] = model_file

        path = mgr.ensure_downloaded("flower_classifier_mobilenetv2")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_get_labels_reads_and_caches(self, mock_download: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "flower_classifier_labels.txt"
        labels_file.write_text("daisy\ndandelion\n\nrose\nsunflower\ntulip\n", encoding="utf-8")
        mock_download.return_value = str(labels_file)

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.get_labels("flower_classifier_mobilenetv2") == ["daisy", "dandelion", "rose", "sunflower", "tulip"]
        mgr.get_labels("flower_classifier_mobilenetv2")
        mock_download.assert_called_once()
        assert mock_download.call_args.kwargs["filename"] == "flower_classifier_labels.txt"

    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_get_labels_rejects_empty_file(self, mock_download: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "empty.txt"
        labels_file.write_text("\n", encoding="utf-8")
        mock_download.return_value = str(labels_file)

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ValueError, match="empty"):
            mgr.get_labels("flower_classifier_mobilenetv2")

    @patch("scenecaption.ml.model_manager.InferenceSession")
    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/scenecaption_test_models/flower_classifier_mobilenetv2.onnx"
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        session1 = mgr.get_session("flower_classifier_mobilenetv2")
        session2 = mgr.get_session("flower_classifier_mobilenetv2")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("scenecaption.ml.model_manager.InferenceSession")
    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/scenecaption_test_models/flower_classifier_mobilenetv2.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        assert mgr.get_loaded_models() == []
        mgr.get_session("flower_classifier_mobilenetv2")
        assert mgr.get_loaded_models() == ["flower_classifier_mobilenetv2"]

    @patch("scenecaption.ml.model_manager.InferenceSession")
    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_removes_expired(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/scenecaption_test_models/flower_classifier_mobilenetv2.onnx"
        settings = _make_settings(model_ttl=1)
        mgr = OnnxModelManager(settings)
        mgr.get_session("flower_classifier_mobilenetv2")

        # Fake the last_used time to be in the past.
        mgr._sessions["flower_classifier_mobilenetv2"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_unload_idle_skipped_when_ttl_zero(self) -> None:
        settings = _make_settings(model_ttl=0)
        mgr = OnnxModelManager(settings)
        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self) -> None:
        settings = _make_settings(device="cpu")
        mgr = OnnxModelManager(settings)
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        settings = _make_settings(device="cuda")
        mgr = OnnxModelManager(settings)
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        settings = _make_settings(device="openvino")
        mgr = OnnxModelManager(settings)
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("scenecaption.ml.model_manager.InferenceSession")
    @patch("scenecaption.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/scenecaption_test_models/flower_classifier_mobilenetv2.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)
        mgr.get_session("flower_classifier_mobilenetv2")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self) -> None:
        settings = _make_settings()
        mgr = OnnxModelManager(settings)
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
