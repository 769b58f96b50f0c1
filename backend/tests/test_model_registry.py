import pytest

from config.model_registry import (
    DEFAULT_MODELS,
    MODEL_REGISTRY,
    PARAKEET_REQUIRED_FILES,
    backend_for_model,
    get_model_descriptor,
    list_model_ids,
)
from core.errors import UnknownModelError


def test_every_entry_is_consistent():
    for backend, models in MODEL_REGISTRY.items():
        for model_id, descriptor in models.items():
            assert descriptor.model_id == model_id
            assert descriptor.backend == backend
            assert descriptor.expected_size_bytes > 0
            assert descriptor.required_files
            if descriptor.is_archive:
                assert descriptor.marker_file in descriptor.required_files
                assert descriptor.extract_dir


def test_default_models_are_registered():
    for backend, model_id in DEFAULT_MODELS.items():
        assert get_model_descriptor(model_id, backend).backend == backend


def test_parakeet_models_are_archives():
    descriptor = get_model_descriptor("parakeet-tdt-0.6b-v3")
    assert descriptor.file_name == "parakeet-tdt-0.6b-v3.tar.bz2"
    assert descriptor.required_files == PARAKEET_REQUIRED_FILES


def test_llama_models_are_single_files():
    descriptor = get_model_descriptor("qwen2.5-0.5b-instruct-q4_k_m")
    assert not descriptor.is_archive
    assert descriptor.file_name.endswith(".gguf")


def test_unknown_model_lists_valid_ids():
    with pytest.raises(UnknownModelError) as exc_info:
        get_model_descriptor("gpt-17")

    assert set(exc_info.value.valid_ids) == set(list_model_ids())


def test_backend_scoped_lookup():
    with pytest.raises(UnknownModelError):
        get_model_descriptor("parakeet-tdt-0.6b-v3", backend="llama")
    with pytest.raises(UnknownModelError):
        get_model_descriptor("parakeet-tdt-0.6b-v3", backend="whisper")


def test_backend_for_model():
    assert backend_for_model("parakeet-tdt-0.6b-v2") == "parakeet"
    assert backend_for_model("llama-3.2-3b-instruct-q4_k_m") == "llama"
