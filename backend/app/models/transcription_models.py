"""
转录 / 推理请求相关数据模型
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class TranscriptionResult:
    """一次转录的结果"""
    text: str = ""
    elapsed: float = 0.0            # 服务端处理耗时（秒，多段时为总和）
    language: str = "auto"
    segments: int = 0               # 提交给服务的分段数（静音时为0）
    duration_seconds: float = 0.0   # 音频时长

    @property
    def success(self) -> bool:
        return bool(self.text.strip())

    @property
    def message(self) -> Optional[str]:
        return None if self.success else "No audio detected"

    def to_dict(self) -> Dict:
        """转换为字典格式"""
        return {
            "success": self.success,
            "text": self.text,
            "elapsed": self.elapsed,
            "language": self.language,
            "segments": self.segments,
            "duration_seconds": round(self.duration_seconds, 3),
            "message": self.message,
        }


@dataclass
class InferenceRequest:
    """文本生成请求"""
    messages: List[Dict[str, str]]
    model_id: Optional[str] = None
    options: Dict = field(default_factory=dict)     # temperature / max_tokens
