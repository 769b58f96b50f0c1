"""
FFmpeg管理服务
- 检测项目目录中的FFmpeg
- 回退到系统PATH中的FFmpeg
"""

import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Optional, Tuple

from core.config import config
from core.errors import AudioFormatError


class FFmpegManager:
    """FFmpeg管理器"""

    def __init__(self, ffmpeg_exe: Optional[Path] = None):
        """初始化FFmpeg管理器"""
        self.logger = logging.getLogger(__name__)
        self.ffmpeg_exe = Path(ffmpeg_exe) if ffmpeg_exe else config.FFMPEG_EXE
        self._resolved: Optional[str] = None

    def check_ffmpeg(self) -> Tuple[bool, str]:
        """
        检查FFmpeg是否可用

        Returns:
            Tuple[bool, str]: (是否可用, FFmpeg路径或错误信息)
        """
        # 首先检查项目目录中的FFmpeg
        if self.ffmpeg_exe.exists():
            if self._test_ffmpeg(str(self.ffmpeg_exe)):
                self.logger.info(f"✅ 发现项目内FFmpeg: {self.ffmpeg_exe}")
                return True, str(self.ffmpeg_exe)
            self.logger.warning(f"⚠️ 项目内FFmpeg损坏: {self.ffmpeg_exe}")

        # 检查系统环境变量中的FFmpeg
        system_ffmpeg = shutil.which("ffmpeg")
        if system_ffmpeg and self._test_ffmpeg(system_ffmpeg):
            self.logger.info(f"✅ 发现系统FFmpeg: {system_ffmpeg}")
            return True, system_ffmpeg

        self.logger.warning("❌ 未找到可用的FFmpeg")
        return False, "FFmpeg未安装"

    def _test_ffmpeg(self, ffmpeg_path: str) -> bool:
        """运行 ffmpeg -version 确认可执行"""
        try:
            result = subprocess.run(
                [ffmpeg_path, "-version"],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=5,
                creationflags=subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0
            )
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.debug(f"FFmpeg测试失败: {ffmpeg_path} - {e}")
            return False

    def get_ffmpeg_path(self) -> str:
        """
        获取可用的FFmpeg路径（结果缓存）

        Raises:
            AudioFormatError: 找不到FFmpeg，无法转换非WAV音频
        """
        if self._resolved is None:
            available, path = self.check_ffmpeg()
            if not available:
                raise AudioFormatError(
                    "音频转换需要FFmpeg，但未找到可用的FFmpeg",
                    suggestion=f"将FFmpeg放到 {self.ffmpeg_exe.parent} 或安装到系统PATH",
                )
            self._resolved = path
        return self._resolved
