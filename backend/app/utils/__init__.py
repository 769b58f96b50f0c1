"""
工具模块
"""
from .audio_utils import AudioNormalizer, compute_rms, decode_wav, is_wav_format, split_segments

__all__ = [
    'AudioNormalizer',
    'compute_rms',
    'decode_wav',
    'is_wav_format',
    'split_segments',
]
