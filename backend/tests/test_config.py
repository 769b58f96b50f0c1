import pytest

from core.config import ServerSettings, config


def test_models_dir_is_per_backend(tmp_path):
    assert config.get_models_dir("llama") == tmp_path / "models" / "llama-models"
    assert config.get_models_dir("parakeet") == tmp_path / "models" / "parakeet-models"


def test_server_settings_lookup():
    assert config.get_server_settings("llama") is config.LLAMA_SERVER
    assert config.get_server_settings("parakeet") is config.PARAKEET_SERVER
    assert isinstance(config.LLAMA_SERVER, ServerSettings)

    with pytest.raises(ValueError):
        config.get_server_settings("whisper")


def test_ensure_dirs_creates_runtime_layout(tmp_path):
    config.ensure_dirs()

    assert (tmp_path / "temp").is_dir()
    assert (tmp_path / "logs").is_dir()
    assert (tmp_path / "models" / "llama-models").is_dir()
    assert (tmp_path / "models" / "parakeet-models").is_dir()
    assert config.get_safe_temp_dir() == tmp_path / "temp"
