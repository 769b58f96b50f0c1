"""
统一配置管理
严格遵守独立打包原则：
1. 杜绝硬编码绝对路径
2. 模型缓存目录按后端分开（<缓存根目录>/<后端>-models）
3. 可执行文件同时支持打包布局与开发布局
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple


@dataclass(frozen=True)
class ServerSettings:
    """本地推理服务进程的监管参数（每种后端一份）"""
    port_range: Tuple[int, int]                 # 端口扫描范围（闭区间）
    startup_timeout: float = 60.0               # 启动超时（秒）
    startup_poll_interval: float = 0.5          # 启动阶段健康探测间隔（秒）
    health_check_interval: float = 5.0          # 就绪后健康检查间隔（秒）
    health_check_timeout: float = 2.0           # 单次健康探测超时（秒）
    health_failure_threshold: int = 3           # 连续失败多少次后标记为未就绪
    graceful_stop_timeout: float = 5.0          # 优雅退出等待时间（秒），超时强制结束
    stderr_buffer_limit: int = 64 * 1024        # stderr 诊断缓冲上限（字符）


class ProjectConfig:
    """项目配置类"""

    def __init__(self):
        # ========== 路径配置（基于项目根目录） ==========
        # backend/app/core/config.py -> backend/app/core -> backend/app -> backend -> project_root
        self.BASE_DIR = Path(__file__).parent.parent.parent.parent.resolve()

        self.TEMP_DIR = Path(os.getenv("LOCAL_RUNTIME_TEMP_DIR", str(self.BASE_DIR / "temp")))

        # 原生服务可执行文件目录：打包后位于 bundle 内，开发时位于项目 resources/bin
        self.DEV_BIN_DIR = self.BASE_DIR / "resources" / "bin"
        self.PACKAGED_BIN_DIR = self._get_packaged_bin_dir()

        # FFmpeg路径（优先使用项目内的，支持独立打包）
        self.FFMPEG_DIR = self.BASE_DIR / "ffmpeg" / "bin"
        self.FFMPEG_EXE = self.FFMPEG_DIR / ("ffmpeg.exe" if sys.platform == "win32" else "ffmpeg")

        # 模型缓存根目录（每种后端一个子目录）
        default_models_root = Path.home() / ".cache" / "localinfer"
        self.MODELS_ROOT = Path(os.getenv("LOCAL_MODELS_DIR", str(default_models_root)))

        # ========== 下载配置 ==========
        self.DOWNLOAD_USER_AGENT = "LocalInfer/1.0"
        self.DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "60"))          # 连接/读取超时（秒）
        self.DOWNLOAD_MAX_RETRIES = int(os.getenv("DOWNLOAD_MAX_RETRIES", "3"))
        self.DOWNLOAD_MAX_REDIRECTS = 5
        self.DOWNLOAD_MAX_BACKOFF = 30.0                                              # 退避上限（秒）
        self.DOWNLOAD_STALL_TIMEOUT = float(os.getenv("DOWNLOAD_STALL_TIMEOUT", "30"))
        self.DOWNLOAD_PROGRESS_THROTTLE = 0.1                                         # 进度回调最小间隔（秒）
        self.DOWNLOAD_CHUNK_SIZE = 1024 * 1024                                        # 1MB chunks
        self.STALE_DOWNLOAD_AGE = 24 * 60 * 60                                        # 24小时

        # 归档模型解压需要额外空间（归档 + 解压结果）
        self.ARCHIVE_SPACE_FACTOR = 2.5
        self.FILE_SPACE_FACTOR = 1.1

        # ========== 服务进程配置 ==========
        self.LLAMA_SERVER = ServerSettings(port_range=(8200, 8220))
        self.PARAKEET_SERVER = ServerSettings(port_range=(8230, 8250))

        self.LLAMA_CONTEXT_SIZE = int(os.getenv("LLAMA_CONTEXT_SIZE", "4096"))
        self.LLAMA_THREADS = int(os.getenv("LLAMA_THREADS", "4"))
        self.LLAMA_GPU_LAYERS = int(os.getenv("LLAMA_GPU_LAYERS", "0"))
        self.PARAKEET_THREADS = int(os.getenv("PARAKEET_THREADS", "2"))

        # ========== 推理配置 ==========
        self.INFERENCE_TIMEOUT = 300.0          # 5分钟
        self.DEFAULT_TEMPERATURE = 0.7
        self.DEFAULT_MAX_TOKENS = 512
        self.TRANSCRIBE_TIMEOUT = 300.0

        # ========== 音频处理配置 ==========
        self.SAMPLE_RATE = 16000                # 16kHz 单声道
        self.MAX_SEGMENT_SECONDS = 30           # 每段最长30秒
        self.SILENCE_RMS_THRESHOLD = 0.001      # 低于该RMS视为静音

        # ========== 服务器配置 ==========
        self.API_HOST = "127.0.0.1"
        self.API_PORT = int(os.getenv("API_PORT", "8000"))
        # 启动时预热的模型（逗号分隔的模型ID）
        self.PREWARM_MODELS = [m.strip() for m in os.getenv("PREWARM_MODELS", "").split(",") if m.strip()]

        # ========== 日志配置 ==========
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_DIR = self.BASE_DIR / "logs"
        self.LOG_FILE = self.LOG_DIR / "app.log"

    @staticmethod
    def _get_packaged_bin_dir() -> Optional[Path]:
        """获取打包后的 resources/bin 目录（非打包运行时返回 None）"""
        if not getattr(sys, 'frozen', False):
            return None
        bundle_dir = getattr(sys, '_MEIPASS', None) or os.path.dirname(sys.executable)
        return Path(bundle_dir) / "resources" / "bin"

    def get_models_dir(self, backend: str) -> Path:
        """
        获取指定后端的模型目录

        Args:
            backend: 后端名称（llama / parakeet）

        Returns:
            Path: 模型目录
        """
        return self.MODELS_ROOT / f"{backend}-models"

    def get_server_settings(self, backend: str) -> ServerSettings:
        """获取指定后端的进程监管参数"""
        if backend == "llama":
            return self.LLAMA_SERVER
        if backend == "parakeet":
            return self.PARAKEET_SERVER
        raise ValueError(f"未知后端: {backend}")

    def get_safe_temp_dir(self) -> Path:
        """获取临时目录（服务进程工作目录、音频转换中间文件）"""
        self.TEMP_DIR.mkdir(parents=True, exist_ok=True)
        return self.TEMP_DIR

    def ensure_dirs(self):
        """确保运行所需目录存在（由应用启动流程调用，导入时不创建）"""
        for dir_path in [
            self.TEMP_DIR,
            self.LOG_DIR,
            self.MODELS_ROOT,
            self.get_models_dir("llama"),
            self.get_models_dir("parakeet"),
        ]:
            dir_path.mkdir(parents=True, exist_ok=True)


# 全局配置实例（只读）
config = ProjectConfig()
