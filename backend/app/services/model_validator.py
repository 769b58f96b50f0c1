"""
模型完整性验证工具
负责验证模型文件的完整性
"""

from pathlib import Path
from typing import Iterable, List, Tuple
import logging

from models.model_models import ModelDescriptor

logger = logging.getLogger(__name__)


class ModelValidator:
    """模型完整性验证器"""

    @staticmethod
    def validate_files(model_path: Path, required_files: Iterable[str]) -> Tuple[bool, List[str], str]:
        """
        验证模型目录中的必需文件

        Args:
            model_path: 模型目录路径
            required_files: 必需文件名列表

        Returns:
            Tuple[bool, List[str], str]: (是否完整, 缺失的文件列表, 详细信息)
        """
        required_files = list(required_files)
        if not model_path.exists():
            return False, required_files, f"模型目录不存在: {model_path}"

        missing_files = []
        file_info = []

        for file_name in required_files:
            file_path = model_path / file_name
            if not file_path.is_file():
                missing_files.append(file_name)
                file_info.append(f"  ✗ {file_name}: 缺失")
                continue

            size = file_path.stat().st_size
            if size == 0:
                missing_files.append(file_name)
                file_info.append(f"  ✗ {file_name}: 0 字节（损坏）")
            else:
                file_info.append(f"  ✓ {file_name}: {size:,} 字节")

        is_complete = len(missing_files) == 0
        detail = "\n".join(file_info)

        return is_complete, missing_files, detail

    @staticmethod
    def validate_model(model_path: Path, descriptor: ModelDescriptor) -> Tuple[bool, List[str], str]:
        """按注册表条目验证已安装的模型"""
        return ModelValidator.validate_files(model_path, descriptor.required_files)

    @staticmethod
    def get_dir_size(path: Path) -> int:
        """统计目录（或文件）占用的字节数"""
        if not path.exists():
            return 0
        if path.is_file():
            return path.stat().st_size

        total = 0
        for item in path.rglob("*"):
            try:
                if item.is_file():
                    total += item.stat().st_size
            except OSError:
                continue
        return total
