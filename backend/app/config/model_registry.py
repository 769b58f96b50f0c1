"""
模型注册表
模型ID -> 下载地址、预期大小、必需文件、归档布局
"""

import os
from typing import Dict, List, Optional

from core.errors import UnknownModelError
from models.model_models import ModelDescriptor


BACKENDS = ("llama", "parakeet")

# sherpa-onnx 的预训练模型发布地址（带版本的 release 路径）
SHERPA_ASR_RELEASE_URL = os.getenv(
    "SHERPA_ASR_RELEASE_URL",
    "https://github.com/k2-fsa/sherpa-onnx/releases/download/asr-models",
)

PARAKEET_REQUIRED_FILES = (
    "encoder.int8.onnx",
    "decoder.int8.onnx",
    "joiner.int8.onnx",
    "tokens.txt",
)

PARAKEET_MODELS: Dict[str, ModelDescriptor] = {
    "parakeet-tdt-0.6b-v3": ModelDescriptor(
        model_id="parakeet-tdt-0.6b-v3",
        backend="parakeet",
        download_url=f"{SHERPA_ASR_RELEASE_URL}/sherpa-onnx-nemo-parakeet-tdt-0.6b-v3-int8.tar.bz2",
        expected_size_bytes=640_000_000,
        required_files=PARAKEET_REQUIRED_FILES,
        extract_dir="sherpa-onnx-nemo-parakeet-tdt-0.6b-v3-int8",
        archive_format="tar.bz2",
        family_keyword="parakeet",
        marker_file="encoder.int8.onnx",
        size_tolerance_percent=15,
        description="多语言（25种欧洲语言），自动检测语言",
        language="auto",
        supported_languages=(
            "bg", "hr", "cs", "da", "nl", "en", "et", "fi", "fr", "de", "el", "hu", "it",
            "lv", "lt", "mt", "pl", "pt", "ro", "sk", "sl", "es", "sv", "ru", "uk",
        ),
    ),
    "parakeet-tdt-0.6b-v2": ModelDescriptor(
        model_id="parakeet-tdt-0.6b-v2",
        backend="parakeet",
        download_url=f"{SHERPA_ASR_RELEASE_URL}/sherpa-onnx-nemo-parakeet-tdt-0.6b-v2-int8.tar.bz2",
        expected_size_bytes=630_000_000,
        required_files=PARAKEET_REQUIRED_FILES,
        extract_dir="sherpa-onnx-nemo-parakeet-tdt-0.6b-v2-int8",
        archive_format="tar.bz2",
        family_keyword="parakeet",
        marker_file="encoder.int8.onnx",
        size_tolerance_percent=15,
        description="仅英语，精度更高",
        language="en",
        supported_languages=("en",),
    ),
}

LLAMA_MODELS: Dict[str, ModelDescriptor] = {
    "qwen2.5-0.5b-instruct-q4_k_m": ModelDescriptor(
        model_id="qwen2.5-0.5b-instruct-q4_k_m",
        backend="llama",
        download_url="https://huggingface.co/Qwen/Qwen2.5-0.5B-Instruct-GGUF/resolve/main/qwen2.5-0.5b-instruct-q4_k_m.gguf",
        expected_size_bytes=491_000_000,
        required_files=("qwen2.5-0.5b-instruct-q4_k_m.gguf",),
        description="最快，适合简单整理",
    ),
    "qwen2.5-1.5b-instruct-q4_k_m": ModelDescriptor(
        model_id="qwen2.5-1.5b-instruct-q4_k_m",
        backend="llama",
        download_url="https://huggingface.co/Qwen/Qwen2.5-1.5B-Instruct-GGUF/resolve/main/qwen2.5-1.5b-instruct-q4_k_m.gguf",
        expected_size_bytes=1_120_000_000,
        required_files=("qwen2.5-1.5b-instruct-q4_k_m.gguf",),
        description="平衡速度与质量",
    ),
    "llama-3.2-3b-instruct-q4_k_m": ModelDescriptor(
        model_id="llama-3.2-3b-instruct-q4_k_m",
        backend="llama",
        download_url="https://huggingface.co/bartowski/Llama-3.2-3B-Instruct-GGUF/resolve/main/Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        expected_size_bytes=2_020_000_000,
        required_files=("Llama-3.2-3B-Instruct-Q4_K_M.gguf",),
        description="质量更高，需要更多内存",
    ),
}

MODEL_REGISTRY: Dict[str, Dict[str, ModelDescriptor]] = {
    "llama": LLAMA_MODELS,
    "parakeet": PARAKEET_MODELS,
}

DEFAULT_MODELS = {
    "llama": "qwen2.5-1.5b-instruct-q4_k_m",
    "parakeet": "parakeet-tdt-0.6b-v3",
}


def list_model_ids(backend: Optional[str] = None) -> List[str]:
    """列出注册表中的模型ID（可按后端过滤）"""
    if backend is None:
        return [model_id for models in MODEL_REGISTRY.values() for model_id in models]
    return list(MODEL_REGISTRY.get(backend, {}).keys())


def get_model_descriptor(model_id: str, backend: Optional[str] = None) -> ModelDescriptor:
    """
    查询模型注册表

    Args:
        model_id: 模型ID
        backend: 限定后端；为 None 时在所有后端中查找

    Returns:
        ModelDescriptor: 模型描述

    Raises:
        UnknownModelError: 模型ID不在注册表中
    """
    if backend is not None and backend not in MODEL_REGISTRY:
        raise UnknownModelError(model_id, list_model_ids(), backend=backend)

    backends = [backend] if backend else list(MODEL_REGISTRY.keys())
    for name in backends:
        descriptor = MODEL_REGISTRY[name].get(model_id)
        if descriptor is not None:
            return descriptor

    raise UnknownModelError(model_id, list_model_ids(backend), backend=backend)


def backend_for_model(model_id: str) -> str:
    """根据模型ID确定所属后端"""
    return get_model_descriptor(model_id).backend
