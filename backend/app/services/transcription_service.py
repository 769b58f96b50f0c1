"""
语音转录服务
音频 -> 16kHz 单声道 -> 静音检测 -> 确保服务运行 -> 分段提交 -> 拼接文本
"""
import logging
from typing import Optional

from config.model_registry import DEFAULT_MODELS
from core.config import config
from models.transcription_models import TranscriptionResult
from services.model_manager_service import ModelManagerService
from services.parakeet_server import ParakeetServerManager
from utils.audio_utils import AudioNormalizer, compute_rms, split_segments

logger = logging.getLogger(__name__)


class TranscriptionService:
    """转录网关：协调模型检查、音频规范化和语音识别服务"""

    def __init__(self, model_manager: ModelManagerService, server: ParakeetServerManager,
                 normalizer: AudioNormalizer, sample_rate: int = None,
                 max_segment_seconds: float = None, silence_threshold: float = None):
        self.model_manager = model_manager
        self.server = server
        self.normalizer = normalizer
        self.sample_rate = sample_rate or config.SAMPLE_RATE
        self.max_segment_seconds = max_segment_seconds or config.MAX_SEGMENT_SECONDS
        self.silence_threshold = (
            config.SILENCE_RMS_THRESHOLD if silence_threshold is None else silence_threshold
        )

    @property
    def segment_samples(self) -> int:
        return int(self.max_segment_seconds * self.sample_rate)

    async def transcribe(self, audio: bytes, model_id: Optional[str] = None,
                         language: Optional[str] = None) -> TranscriptionResult:
        """
        转录一段音频

        Args:
            audio: 任意格式的音频数据（非16kHz单声道WAV时需要FFmpeg）
            model_id: 语音模型ID，默认使用默认模型
            language: 语言标记（原样返回）

        Returns:
            TranscriptionResult: 转录结果；静音时 text 为空且不会访问服务
        """
        model_id = model_id or DEFAULT_MODELS["parakeet"]
        descriptor = self.model_manager.validate_model_name(model_id)
        model_dir = self.model_manager.require_installed(model_id)
        language = language or descriptor.language

        samples = await self.normalizer.load_samples(audio)
        duration = len(samples) / self.sample_rate
        rms = compute_rms(samples)
        logger.debug(f"音频分析: 时长 {duration:.2f}秒, RMS {rms:.5f}")

        if rms < self.silence_threshold:
            logger.info(f"检测到静音 (RMS {rms:.5f})，跳过转录")
            return TranscriptionResult(text="", elapsed=0.0, language=language,
                                       segments=0, duration_seconds=duration)

        await self.server.start(model_dir)

        segments = split_segments(samples, self.segment_samples)
        if len(segments) > 1:
            logger.info(f"长音频分段转录: {duration:.1f}秒 -> {len(segments)} 段")

        texts = []
        total_elapsed = 0.0
        for segment in segments:
            result = await self.server.transcribe_samples(segment, self.sample_rate)
            total_elapsed += result.get("elapsed") or 0.0
            if result["text"]:
                texts.append(result["text"])

        return TranscriptionResult(
            text=" ".join(texts),
            elapsed=total_elapsed,
            language=language,
            segments=len(segments),
            duration_seconds=duration,
        )
