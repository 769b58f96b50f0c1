"""
模型归档解压
tar.bz2 -> 临时目录 -> 定位模型目录 -> 移动到最终位置 -> 校验标记文件
"""

import asyncio
import errno
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.errors import ExtractionError
from models.model_models import ModelDescriptor
from services.download_service import EXTRACT_DIR_PREFIX

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """解压结果"""
    model_dir: Path
    source_dir_name: str
    heuristic_match: bool = False   # 通过关键字兜底匹配（安装视为降级）


class ArchiveExtractor:
    """调用系统 tar 解压模型归档"""

    def __init__(self, tar_command: str = "tar"):
        self.tar_command = tar_command

    async def run_tar(self, archive_path: Path, dest_dir: Path):
        """执行 tar -xjf，失败时携带 stderr 抛出"""
        try:
            process = await asyncio.create_subprocess_exec(
                self.tar_command, "-xjf", str(archive_path), "-C", str(dest_dir),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExtractionError(f"无法启动 tar: {e}", suggestion="请确认系统已安装 tar")

        _, stderr = await process.communicate()
        if process.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            raise ExtractionError(
                f"tar 解压失败 (退出码 {process.returncode}): {stderr_text}",
                exit_code=process.returncode,
            )

    @staticmethod
    def locate_model_dir(extract_root: Path, descriptor: ModelDescriptor) -> Optional[ExtractionResult]:
        """
        在解压目录中定位模型目录

        优先精确匹配 extract_dir；找不到时按 family_keyword 兜底
        """
        if descriptor.extract_dir:
            exact = extract_root / descriptor.extract_dir
            if exact.is_dir():
                return ExtractionResult(model_dir=exact, source_dir_name=exact.name)

        if descriptor.family_keyword:
            keyword = descriptor.family_keyword.lower()
            for entry in sorted(extract_root.iterdir()):
                if entry.is_dir() and keyword in entry.name.lower():
                    logger.warning(
                        f"⚠️ 未找到预期目录 {descriptor.extract_dir}，"
                        f"按关键字 '{descriptor.family_keyword}' 使用: {entry.name}"
                    )
                    return ExtractionResult(model_dir=entry, source_dir_name=entry.name, heuristic_match=True)

        return None

    @staticmethod
    def _move_dir(source: Path, target: Path):
        try:
            os.replace(source, target)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.copytree(source, target)
            shutil.rmtree(source, ignore_errors=True)

    async def extract(self, archive_path: Path, target_dir: Path, descriptor: ModelDescriptor) -> ExtractionResult:
        """
        解压模型归档到目标目录

        Args:
            archive_path: 归档文件
            target_dir: 模型最终目录（已存在时会被替换）
            descriptor: 模型注册表条目

        Returns:
            ExtractionResult: 解压结果（model_dir 为最终目录）

        Raises:
            ExtractionError: 解压失败、找不到模型目录或缺少标记文件
        """
        archive_path = Path(archive_path)
        target_dir = Path(target_dir)
        temp_dir = target_dir.parent / f"{EXTRACT_DIR_PREFIX}{descriptor.model_id}"

        logger.info(f"开始解压: {archive_path.name} -> {target_dir}")

        try:
            if temp_dir.exists():
                shutil.rmtree(temp_dir, ignore_errors=True)
            temp_dir.mkdir(parents=True)

            await self.run_tar(archive_path, temp_dir)

            located = self.locate_model_dir(temp_dir, descriptor)
            if located is None:
                raise ExtractionError(
                    f"解压结果中找不到模型目录: {descriptor.extract_dir}",
                    model_id=descriptor.model_id,
                )

            if target_dir.exists():
                shutil.rmtree(target_dir)
            self._move_dir(located.model_dir, target_dir)

            if descriptor.marker_file and not (target_dir / descriptor.marker_file).is_file():
                raise ExtractionError(
                    f"解压后缺少文件: {descriptor.marker_file}",
                    suggestion="归档可能已损坏，请重新下载",
                    model_id=descriptor.model_id,
                )

            logger.info(f"✅ 解压完成: {target_dir}")
            return ExtractionResult(
                model_dir=target_dir,
                source_dir_name=located.source_dir_name,
                heuristic_match=located.heuristic_match,
            )
        finally:
            if temp_dir.exists():
                shutil.rmtree(temp_dir, ignore_errors=True)
