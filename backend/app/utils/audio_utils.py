"""
音频处理工具
- 任意输入 -> 16kHz 单声道 float32
- RMS 静音检测
- 长音频分段
"""
import asyncio
import io
import logging
import uuid
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import soundfile as sf

from core.config import config
from core.errors import AudioFormatError

logger = logging.getLogger(__name__)


def is_wav_format(data: bytes) -> bool:
    """RIFF....WAVE 文件头"""
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def is_normalized_wav(data: bytes, sample_rate: int = None) -> bool:
    """已经是目标采样率的单声道WAV，可以跳过FFmpeg"""
    if not is_wav_format(data):
        return False
    try:
        info = sf.info(io.BytesIO(data))
    except RuntimeError:
        return False
    return info.channels == 1 and info.samplerate == (sample_rate or config.SAMPLE_RATE)


def decode_wav(data: bytes) -> np.ndarray:
    """解码WAV为单声道 float32 采样（多声道取平均）"""
    try:
        samples, _ = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except RuntimeError as e:
        raise AudioFormatError(f"无法解码WAV音频: {e}")
    if samples.shape[1] > 1:
        return samples.mean(axis=1).astype(np.float32)
    return samples[:, 0]


def compute_rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def split_segments(samples: np.ndarray, segment_samples: int) -> List[np.ndarray]:
    """按固定长度切分（最后一段可能更短）"""
    return [samples[offset:offset + segment_samples] for offset in range(0, len(samples), segment_samples)]


class AudioNormalizer:
    """把任意音频转换为 16kHz 单声道 float32 采样"""

    def __init__(self, ffmpeg_resolver: Callable[[], str], temp_dir: Optional[Path] = None,
                 sample_rate: int = None):
        """
        Args:
            ffmpeg_resolver: 返回FFmpeg路径的函数（找不到时抛出 AudioFormatError）
            temp_dir: 转换中间文件目录
            sample_rate: 目标采样率
        """
        self.ffmpeg_resolver = ffmpeg_resolver
        self.temp_dir = temp_dir
        self.sample_rate = sample_rate or config.SAMPLE_RATE

    async def convert_to_wav(self, data: bytes) -> bytes:
        """通过FFmpeg转换为 16kHz 单声道 WAV，中间文件总是被删除"""
        loop = asyncio.get_running_loop()
        ffmpeg_cmd = await loop.run_in_executor(None, self.ffmpeg_resolver)

        temp_dir = self.temp_dir or config.get_safe_temp_dir()
        temp_dir.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex[:12]
        input_path = temp_dir / f"audio-input-{token}"
        wav_path = temp_dir / f"audio-{token}.wav"

        try:
            input_path.write_bytes(data)
            cmd = [
                ffmpeg_cmd,
                '-y',
                '-i', str(input_path),
                '-vn',
                '-ar', str(self.sample_rate),
                '-ac', '1',
                '-f', 'wav',
                str(wav_path)
            ]
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
            if process.returncode != 0:
                message = stderr.decode("utf-8", errors="replace").strip()[-500:]
                raise AudioFormatError(f"FFmpeg转换失败: {message}", exit_code=process.returncode)

            wav_data = wav_path.read_bytes()
            logger.debug(f"FFmpeg转换完成: {len(data)} -> {len(wav_data)} 字节")
            return wav_data
        finally:
            for path in (input_path, wav_path):
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"删除临时音频文件失败: {path} - {e}")

    async def load_samples(self, data: bytes) -> np.ndarray:
        """
        加载音频为 float32 采样

        Raises:
            AudioFormatError: 输入为空或无法转换
        """
        if not data:
            raise AudioFormatError("音频数据为空")

        if is_normalized_wav(data, self.sample_rate):
            return decode_wav(data)

        wav_data = await self.convert_to_wav(data)
        return decode_wav(wav_data)
