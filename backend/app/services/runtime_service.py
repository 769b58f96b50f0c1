"""
本地推理运行时（组合根）

每个后端一个模型管理器 + 一个服务进程监管器，
上层（HTTP路由、宿主程序）只通过 LocalRuntime 访问。
"""

import asyncio
import logging
import platform
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from config.model_registry import BACKENDS, DEFAULT_MODELS, backend_for_model, get_model_descriptor
from core.config import config
from core.errors import LocalRuntimeError
from models.model_models import DownloadProgressEvent, ModelInfo
from models.server_models import ServerStatus
from models.transcription_models import InferenceRequest, TranscriptionResult
from services.archive_extractor import ArchiveExtractor
from services.download_service import DownloadService, check_disk_space
from services.ffmpeg_manager import FFmpegManager
from services.llama_server import LlamaServerManager
from services.model_manager_service import ModelManagerService
from services.parakeet_server import ParakeetServerManager
from services.process_supervisor import ProcessSupervisor
from services.progress_events import ProgressChannel
from services.reasoning_service import ReasoningService
from services.server_utils import platform_arch
from services.transcription_service import TranscriptionService
from utils.audio_utils import AudioNormalizer

logger = logging.getLogger(__name__)


class LocalRuntime:
    """本地模型运行时"""

    def __init__(
        self,
        models_root: Optional[Path] = None,
        progress_channel: Optional[ProgressChannel] = None,
        downloader: Optional[DownloadService] = None,
        extractor: Optional[ArchiveExtractor] = None,
        servers: Optional[Dict[str, ProcessSupervisor]] = None,
        ffmpeg_manager: Optional[FFmpegManager] = None,
    ):
        """
        Args:
            models_root: 模型缓存根目录，默认 config.MODELS_ROOT
            progress_channel: 进度事件通道
            downloader: 下载器（各后端共享）
            extractor: 归档解压器
            servers: 后端 -> 进程监管器（测试时可替换）
            ffmpeg_manager: FFmpeg管理器
        """
        self.models_root = Path(models_root) if models_root else config.MODELS_ROOT
        self.progress = progress_channel or ProgressChannel()
        downloader = downloader or DownloadService()
        extractor = extractor or ArchiveExtractor()

        self.model_managers: Dict[str, ModelManagerService] = {
            backend: ModelManagerService(
                backend,
                models_dir=self.models_root / f"{backend}-models",
                downloader=downloader,
                extractor=extractor,
                progress_channel=self.progress,
            )
            for backend in BACKENDS
        }

        self.servers: Dict[str, ProcessSupervisor] = servers or {
            "llama": LlamaServerManager(),
            "parakeet": ParakeetServerManager(),
        }

        self.ffmpeg = ffmpeg_manager or FFmpegManager()
        self.transcription = TranscriptionService(
            self.model_managers["parakeet"],
            self.servers["parakeet"],
            AudioNormalizer(self.ffmpeg.get_ffmpeg_path),
        )
        self.reasoning = ReasoningService(self.model_managers["llama"], self.servers["llama"])

        self._background_tasks: Set[asyncio.Task] = set()

    # ========== 服务进程 ==========

    def _server_model_path(self, model_id: str) -> Path:
        backend = backend_for_model(model_id)
        manager = self.model_managers[backend]
        model_dir = manager.require_installed(model_id)
        # llama-server 加载单个 gguf 文件，语音服务加载模型目录
        if backend == "llama":
            return manager.get_model_file(model_id)
        return model_dir

    async def start(self, model_id: str, **options) -> ServerStatus:
        """启动（或复用）加载指定模型的服务进程"""
        backend = backend_for_model(model_id)
        model_path = self._server_model_path(model_id)
        server = self.servers[backend]
        await server.start(model_path, **options)
        return server.status()

    async def stop(self, backend: Optional[str] = None):
        """停止指定后端（默认全部）的服务进程，从不抛出"""
        targets = [backend] if backend else list(self.servers)
        await asyncio.gather(*(self.servers[name].stop() for name in targets if name in self.servers))

    def status(self) -> Dict[str, ServerStatus]:
        return {backend: server.status() for backend, server in self.servers.items()}

    # ========== 模型 ==========

    def get_manager(self, backend: str) -> ModelManagerService:
        if backend not in self.model_managers:
            raise ValueError(f"未知后端: {backend}")
        return self.model_managers[backend]

    def manager_for_model(self, model_id: str) -> ModelManagerService:
        return self.model_managers[backend_for_model(model_id)]

    def list_models(self, backend: Optional[str] = None) -> List[ModelInfo]:
        backends = [backend] if backend else list(self.model_managers)
        models: List[ModelInfo] = []
        for name in backends:
            models.extend(self.get_manager(name).list_models())
        return models

    async def download_model(
        self,
        model_id: str,
        on_progress: Optional[Callable[[DownloadProgressEvent], None]] = None,
        prewarm: bool = False,
    ) -> ModelInfo:
        """
        下载并安装模型

        Args:
            model_id: 模型ID
            on_progress: 进度回调
            prewarm: 安装完成后在后台预热服务（失败不影响下载结果）
        """
        manager = self.manager_for_model(model_id)
        info = await manager.download_model(model_id, on_progress)
        if prewarm:
            self._spawn(self._prewarm(model_id))
        return info

    def start_download(self, model_id: str, prewarm: bool = False) -> asyncio.Task:
        """在后台下载模型（结果通过进度事件通道通知）"""
        self.manager_for_model(model_id)
        return self._spawn(self._download_in_background(model_id, prewarm))

    async def _download_in_background(self, model_id: str, prewarm: bool):
        try:
            await self.download_model(model_id, prewarm=prewarm)
        except LocalRuntimeError as e:
            logger.warning(f"后台下载结束: {model_id} - {e.message}")

    def cancel_download(self, model_id: Optional[str] = None) -> dict:
        """取消指定模型（默认全部）的下载"""
        if model_id is not None:
            return self.manager_for_model(model_id).cancel_download(model_id)

        results = [manager.cancel_download() for manager in self.model_managers.values()]
        cancelled = [r["message"] for r in results if r["success"]]
        if not cancelled:
            return {"success": False, "message": "没有正在进行的下载"}
        return {"success": True, "message": "; ".join(cancelled)}

    async def delete_model(self, model_id: str) -> bool:
        """删除模型；如果服务正在使用该模型则先停止服务"""
        backend = backend_for_model(model_id)
        manager = self.model_managers[backend]
        server = self.servers[backend]
        model_dir = manager.get_model_path(model_id)
        if server.model_path and Path(server.model_path).is_relative_to(model_dir):
            logger.info(f"模型正在使用，先停止 {backend} 服务: {model_id}")
            await server.stop()
        return manager.delete_model(model_id)

    async def delete_all_models(self, backend: str) -> dict:
        manager = self.get_manager(backend)
        await self.servers[backend].stop()
        return manager.delete_all_models()

    # ========== 请求 ==========

    async def transcribe(self, audio_bytes: bytes, options: Optional[dict] = None) -> TranscriptionResult:
        options = options or {}
        return await self.transcription.transcribe(
            audio_bytes,
            model_id=options.get("model_id"),
            language=options.get("language"),
        )

    async def inference(self, messages: List[Dict[str, str]], options: Optional[dict] = None) -> str:
        """确保 llama-server 加载了指定模型，然后发送对话请求"""
        options = dict(options or {})
        request = InferenceRequest(
            messages=messages,
            model_id=options.pop("model_id", None) or DEFAULT_MODELS["llama"],
            options=options,
        )
        get_model_descriptor(request.model_id, "llama")
        await self.start(request.model_id)
        return await self.servers["llama"].inference(request.messages, request.options)

    async def process_text(self, text: str, model_id: Optional[str] = None, **options) -> str:
        return await self.reasoning.process_text(text, model_id=model_id, **options)

    # ========== 启动 / 关闭 ==========

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _prewarm(self, model_id: str):
        try:
            await self.start(model_id)
            logger.info(f"✅ 服务预热完成: {model_id}")
        except LocalRuntimeError as e:
            logger.warning(f"⚠️ 服务预热失败（不影响使用）: {model_id} - {e.message}")

    async def initialize_at_startup(self, settings: Optional[dict] = None) -> dict:
        """
        启动时初始化：清理下载残留、扫描模型、按设置预热服务

        Args:
            settings: {"prewarm_models": [模型ID, ...]}

        Returns:
            dict: 各后端的扫描结果
        """
        settings = settings or {}
        results = {}
        for backend, manager in self.model_managers.items():
            try:
                results[backend] = manager.initialize_at_startup()
            except OSError as e:
                logger.error(f"{backend} 模型初始化失败: {e}")
                results[backend] = {"error": str(e)}

        for model_id in settings.get("prewarm_models") or []:
            try:
                ready = self.manager_for_model(model_id).is_model_downloaded(model_id)
            except LocalRuntimeError as e:
                logger.warning(f"跳过预热: {e.message}")
                continue
            if ready:
                await self._prewarm(model_id)
            else:
                logger.info(f"模型未下载，跳过预热: {model_id}")

        return results

    def get_diagnostics(self) -> dict:
        """运行环境诊断信息"""
        ffmpeg_available, ffmpeg_info = self.ffmpeg.check_ffmpeg()
        _, available = check_disk_space(self.models_root, 0)

        backends = {}
        for backend, manager in self.model_managers.items():
            server = self.servers[backend]
            backends[backend] = {
                "binary_available": server.is_available(),
                "binary_path": str(server.get_binary_path() or "") or None,
                "server": server.status().to_dict(),
                "models_dir": str(manager.models_dir),
                "models": [info.to_dict() for info in manager.list_models()],
                "degraded_models": sorted(manager.degraded_models),
                "active_downloads": manager.active_downloads(),
            }

        return {
            "platform": platform_arch(),
            "python": platform.python_version(),
            "models_root": str(self.models_root),
            "disk_free_bytes": None if available == float("inf") else int(available),
            "ffmpeg": {"available": ffmpeg_available, "path": ffmpeg_info if ffmpeg_available else None},
            "backends": backends,
        }

    async def shutdown(self):
        """取消下载、后台任务并停止所有服务进程"""
        logger.info("正在关闭本地运行时...")
        self.cancel_download()
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self.stop()
        logger.info("本地运行时已关闭")
