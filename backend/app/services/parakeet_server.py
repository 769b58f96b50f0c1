"""
Parakeet 语音识别服务管理（sherpa-onnx）
"""

import base64
import time
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from config.model_registry import PARAKEET_REQUIRED_FILES
from core.config import config
from core.errors import ProcessStartupError
from services.process_supervisor import ProcessSupervisor


class ParakeetServerManager(ProcessSupervisor):
    """sherpa-onnx 语音识别服务进程管理 + 转录请求"""

    backend = "parakeet"
    binary_base_name = "sherpa-onnx-server"
    binary_env_var = "PARAKEET_SERVER_PATH"

    def validate_model_path(self, model_path: str):
        model_dir = Path(model_path)
        missing = [name for name in PARAKEET_REQUIRED_FILES if not (model_dir / name).is_file()]
        if missing:
            raise ProcessStartupError(
                f"模型目录不完整: {model_dir}，缺少 {', '.join(missing)}",
                suggestion="请重新下载该模型",
            )

    def build_args(self, model_path: str, port: int, threads: Optional[int] = None, **options) -> List[str]:
        model_dir = Path(model_path)
        return [
            "--port", str(port),
            "--encoder", str(model_dir / "encoder.int8.onnx"),
            "--decoder", str(model_dir / "decoder.int8.onnx"),
            "--joiner", str(model_dir / "joiner.int8.onnx"),
            "--tokens", str(model_dir / "tokens.txt"),
            "--num-threads", str(threads or config.PARAKEET_THREADS),
        ]

    @staticmethod
    def encode_samples(samples: np.ndarray) -> str:
        """float32 小端序 -> base64"""
        return base64.b64encode(np.asarray(samples, dtype="<f4").tobytes()).decode("ascii")

    async def transcribe_samples(self, samples: np.ndarray, sample_rate: int = None) -> Dict:
        """
        转录一段 PCM 采样

        Args:
            samples: 单声道 float32 采样
            sample_rate: 采样率，默认16kHz

        Returns:
            dict: {"text": str, "elapsed": float}
        """
        payload = {
            "samples": self.encode_samples(samples),
            "sample_rate": sample_rate or config.SAMPLE_RATE,
        }

        started = time.monotonic()
        response = await self.post_json("/v1/transcribe", payload, timeout=config.TRANSCRIBE_TIMEOUT)
        measured = time.monotonic() - started

        elapsed = response.get("elapsed")
        return {
            "text": (response.get("text") or "").strip(),
            "elapsed": float(elapsed) if elapsed is not None else measured,
        }
