"""
模型管理数据模型
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import time


@dataclass(frozen=True)
class ModelDescriptor:
    """模型注册表条目（只读静态配置）"""
    model_id: str                       # 模型ID，例如: "parakeet-tdt-0.6b-v3"
    backend: str                        # 后端: "llama" / "parakeet"
    download_url: str                   # 下载地址
    expected_size_bytes: int            # 预期下载大小（字节）
    required_files: Tuple[str, ...]     # 安装完成后模型目录中必须存在的文件
    extract_dir: Optional[str] = None   # 归档内的模型目录名，单文件模型为 None
    archive_format: Optional[str] = None  # "tar.bz2" 或 None（单文件）
    family_keyword: Optional[str] = None  # 解压目录名不匹配时的兜底关键字
    marker_file: Optional[str] = None   # 解压后用于确认布局正确的标记文件
    size_tolerance_percent: float = 10  # 下载大小校验容差（%）
    description: str = ""
    language: str = "auto"
    supported_languages: Tuple[str, ...] = ()

    @property
    def is_archive(self) -> bool:
        return self.archive_format is not None

    @property
    def file_name(self) -> str:
        """下载后的文件名（归档文件或单个权重文件）"""
        if self.is_archive:
            return f"{self.model_id}.{self.archive_format}"
        return self.required_files[0]

    def to_dict(self):
        """转换为字典"""
        return {
            "model_id": self.model_id,
            "backend": self.backend,
            "download_url": self.download_url,
            "expected_size_bytes": self.expected_size_bytes,
            "size_mb": round(self.expected_size_bytes / 1_000_000),
            "required_files": list(self.required_files),
            "description": self.description,
            "language": self.language,
            "supported_languages": list(self.supported_languages),
        }


@dataclass
class ModelInfo:
    """本地模型状态"""
    model_id: str           # 模型ID
    backend: str            # 后端
    size_mb: int            # 预期模型大小(MB)
    status: str             # 状态: "not_downloaded", "downloading", "ready", "error"
    download_progress: float = 0.0  # 下载进度 0-100
    local_path: Optional[str] = None  # 本地路径
    size_on_disk: int = 0   # 本地已占用字节数
    description: str = ""   # 模型描述
    error: Optional[str] = None

    def to_dict(self):
        """转换为字典"""
        return {
            "model_id": self.model_id,
            "backend": self.backend,
            "size_mb": self.size_mb,
            "status": self.status,
            "download_progress": self.download_progress,
            "local_path": str(self.local_path) if self.local_path else None,
            "size_on_disk": self.size_on_disk,
            "description": self.description,
            "error": self.error,
        }


@dataclass
class DownloadProgressEvent:
    """模型下载进度事件"""
    type: str                   # "progress" / "installing" / "complete" / "error" / "cancelled"
    model_id: str
    backend: str
    downloaded_bytes: int = 0
    total_bytes: int = 0
    percentage: float = 0.0
    message: str = ""
    heuristic_match: bool = False   # 安装时使用了目录名兜底匹配
    timestamp: float = field(default_factory=time.time)

    def to_dict(self):
        """转换为字典"""
        return {
            "type": self.type,
            "model": self.model_id,
            "backend": self.backend,
            "downloaded_bytes": self.downloaded_bytes,
            "total_bytes": self.total_bytes,
            "percentage": self.percentage,
            "message": self.message,
            "heuristic_match": self.heuristic_match,
            "timestamp": self.timestamp,
        }
