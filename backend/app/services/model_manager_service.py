"""
模型管理服务
- 注册表校验（未知模型在任何I/O之前被拒绝）
- 下载管理（磁盘预检、断点续传、大小校验、解压安装）
- 同一模型的并发下载请求合并为一个任务
- 进度事件推送（SSE / 回调）
- 删除与启动时清理
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional

from config.model_registry import get_model_descriptor, list_model_ids
from core.config import config
from core.errors import (
    DiskSpaceError,
    DownloadCancelledError,
    ExtractionError,
    LocalRuntimeError,
    ModelNotInstalledError,
)
from models.model_models import DownloadProgressEvent, ModelDescriptor, ModelInfo
from services.archive_extractor import ArchiveExtractor
from services.download_service import (
    DownloadService,
    DownloadSession,
    check_disk_space,
    cleanup_stale_downloads,
    validate_file_size,
)
from services.model_validator import ModelValidator
from services.progress_events import ProgressChannel


class ModelManagerService:
    """
    模型管理服务
    管理单个后端（llama / parakeet）模型的下载、安装、删除
    """

    def __init__(
        self,
        backend: str,
        models_dir: Path = None,
        downloader: DownloadService = None,
        extractor: ArchiveExtractor = None,
        progress_channel: ProgressChannel = None,
    ):
        """
        初始化模型管理服务

        Args:
            backend: 后端名称
            models_dir: 模型目录路径，默认使用config中的配置
            downloader: 下载器
            extractor: 归档解压器
            progress_channel: 进度事件通道（多个后端可共享）
        """
        self.backend = backend
        self.models_dir = Path(models_dir) if models_dir else config.get_models_dir(backend)
        self.downloader = downloader or DownloadService()
        self.extractor = extractor or ArchiveExtractor()
        self.progress = progress_channel or ProgressChannel()
        self.logger = logging.getLogger(__name__)

        # 模型状态跟踪
        self.models: Dict[str, ModelInfo] = {}
        # 通过关键字兜底匹配安装的模型
        self.degraded_models = set()

        # 每个模型同一时间最多一个下载任务
        self._download_tasks: Dict[str, asyncio.Task] = {}
        self._sessions: Dict[str, DownloadSession] = {}

        for model_id in list_model_ids(backend):
            descriptor = get_model_descriptor(model_id, backend)
            self.models[model_id] = ModelInfo(
                model_id=model_id,
                backend=backend,
                size_mb=round(descriptor.expected_size_bytes / 1_000_000),
                status="not_downloaded",
                description=descriptor.description,
            )

    # ========== 查询 ==========

    def validate_model_name(self, model_id: str) -> ModelDescriptor:
        """校验模型ID，返回注册表条目（无效时抛出 UnknownModelError）"""
        return get_model_descriptor(model_id, self.backend)

    def get_model_path(self, model_id: str) -> Path:
        """模型安装目录: <模型目录>/<模型ID>"""
        self.validate_model_name(model_id)
        return self.models_dir / model_id

    def get_model_file(self, model_id: str, file_name: Optional[str] = None) -> Path:
        """获取模型目录中的某个文件（默认第一个必需文件）"""
        descriptor = self.validate_model_name(model_id)
        return self.get_model_path(model_id) / (file_name or descriptor.required_files[0])

    def is_model_downloaded(self, model_id: str) -> bool:
        descriptor = self.validate_model_name(model_id)
        is_complete, _, _ = ModelValidator.validate_model(self.get_model_path(model_id), descriptor)
        return is_complete

    def require_installed(self, model_id: str) -> Path:
        """
        确认模型已安装

        Returns:
            Path: 模型目录

        Raises:
            UnknownModelError: 模型ID无效
            ModelNotInstalledError: 模型未下载或文件不完整
        """
        descriptor = self.validate_model_name(model_id)
        model_path = self.get_model_path(model_id)
        is_complete, missing, detail = ModelValidator.validate_model(model_path, descriptor)
        if not is_complete:
            self.logger.debug(f"模型未安装: {model_id}\n{detail}")
            raise ModelNotInstalledError(model_id, missing)
        return model_path

    def check_model_status(self, model_id: str) -> ModelInfo:
        """从磁盘刷新单个模型状态（下载中的模型保持原状态）"""
        descriptor = self.validate_model_name(model_id)
        info = self.models[model_id]

        if model_id in self._download_tasks:
            return info

        model_path = self.get_model_path(model_id)
        is_complete, _, _ = ModelValidator.validate_model(model_path, descriptor)
        if is_complete:
            info.status = "ready"
            info.download_progress = 100.0
            info.local_path = str(model_path)
            info.size_on_disk = ModelValidator.get_dir_size(model_path)
            info.error = None
        elif info.status != "error":
            info.status = "not_downloaded"
            info.download_progress = 0.0
            info.local_path = None
            info.size_on_disk = 0
        return info

    def list_models(self) -> List[ModelInfo]:
        """列出所有模型状态"""
        return [self.check_model_status(model_id) for model_id in self.models]

    def is_model_downloading(self, model_id: str) -> bool:
        return model_id in self._download_tasks

    def active_downloads(self) -> List[str]:
        return list(self._download_tasks.keys())

    # ========== 下载 ==========

    def _publish(self, event_type: str, model_id: str, downloaded: int = 0, total: int = 0,
                 percentage: float = 0.0, message: str = "", heuristic_match: bool = False):
        self.progress.publish(DownloadProgressEvent(
            type=event_type,
            model_id=model_id,
            backend=self.backend,
            downloaded_bytes=downloaded,
            total_bytes=total,
            percentage=percentage,
            message=message,
            heuristic_match=heuristic_match,
        ))

    async def download_model(
        self,
        model_id: str,
        on_progress: Optional[Callable[[DownloadProgressEvent], None]] = None,
    ) -> ModelInfo:
        """
        下载并安装模型（同一模型的并发请求等待同一个任务）

        Args:
            model_id: 模型ID
            on_progress: 本次调用的进度回调（只接收该模型的事件）

        Returns:
            ModelInfo: 安装后的模型状态
        """
        self.validate_model_name(model_id)

        task = self._download_tasks.get(model_id)
        if task is None:
            if self.is_model_downloaded(model_id):
                self.logger.info(f"模型已存在，跳过下载: {model_id}")
                return self.check_model_status(model_id)

            task = asyncio.ensure_future(self._download_model_task(model_id))
            self._download_tasks[model_id] = task
            task.add_done_callback(lambda t: self._on_task_done(model_id, t))
        else:
            self.logger.info(f"模型正在下载中，等待已有任务: {model_id}")

        unsubscribe = None
        if on_progress is not None:
            def forward(event: DownloadProgressEvent):
                if event.model_id == model_id and event.backend == self.backend:
                    on_progress(event)
            unsubscribe = self.progress.subscribe(forward)

        try:
            # 调用方被取消时不影响下载任务本身
            return await asyncio.shield(task)
        finally:
            if unsubscribe:
                unsubscribe()

    def _on_task_done(self, model_id: str, task: asyncio.Task):
        if self._download_tasks.get(model_id) is task:
            del self._download_tasks[model_id]
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug(f"下载任务结束: {model_id} - {task.exception()!r}")

    async def _download_model_task(self, model_id: str) -> ModelInfo:
        descriptor = self.validate_model_name(model_id)
        info = self.models[model_id]
        info.status = "downloading"
        info.download_progress = 0.0
        info.error = None

        target_dir = self.models_dir / model_id
        if descriptor.is_archive:
            dest_path = self.models_dir / descriptor.file_name
        else:
            dest_path = target_dir / descriptor.file_name

        session = DownloadSession(url=descriptor.download_url, dest_path=dest_path)
        self._sessions[model_id] = session

        try:
            self.models_dir.mkdir(parents=True, exist_ok=True)

            factor = config.ARCHIVE_SPACE_FACTOR if descriptor.is_archive else config.FILE_SPACE_FACTOR
            required_bytes = int(descriptor.expected_size_bytes * factor)
            has_space, available = check_disk_space(self.models_dir, required_bytes)
            if not has_space:
                raise DiskSpaceError(required_bytes, int(available))

            self.logger.info(f"开始下载模型: {model_id} ({info.size_mb}MB)")
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            def on_bytes(downloaded: int, total: int):
                percentage = round(downloaded / total * 100, 1)
                info.download_progress = percentage
                self._publish("progress", model_id, downloaded, total, percentage)

            await self.downloader.download(session, on_progress=on_bytes)
            size = validate_file_size(dest_path, descriptor.expected_size_bytes,
                                      descriptor.size_tolerance_percent)

            heuristic_match = False
            if descriptor.is_archive:
                if session.signal.aborted:
                    raise DownloadCancelledError()
                self._publish("installing", model_id, size, size, 100.0, message="正在解压模型...")
                try:
                    result = await self.extractor.extract(dest_path, target_dir, descriptor)
                finally:
                    dest_path.unlink(missing_ok=True)
                if session.signal.aborted:
                    # 解压期间收到取消请求：回滚已安装的目录
                    shutil.rmtree(target_dir, ignore_errors=True)
                    raise DownloadCancelledError()
                heuristic_match = result.heuristic_match

            is_complete, missing, detail = ModelValidator.validate_model(target_dir, descriptor)
            if not is_complete:
                raise ExtractionError(f"安装后模型文件不完整: {', '.join(missing)}", detail=detail)

            info.status = "ready"
            info.download_progress = 100.0
            info.local_path = str(target_dir)
            info.size_on_disk = ModelValidator.get_dir_size(target_dir)
            if heuristic_match:
                self.degraded_models.add(model_id)
            else:
                self.degraded_models.discard(model_id)

            self.logger.info(f"✅ 模型安装完成: {model_id}")
            self._publish("complete", model_id, size, size, 100.0,
                          message="下载完成", heuristic_match=heuristic_match)
            return info

        except (DownloadCancelledError, asyncio.CancelledError):
            info.status = "not_downloaded"
            info.download_progress = 0.0
            self._publish("cancelled", model_id, message="下载已取消")
            raise
        except LocalRuntimeError as e:
            info.status = "error"
            info.error = e.message
            self.logger.error(f"❌ 模型下载失败: {model_id} - {e.message}")
            self._publish("error", model_id, message=e.message)
            raise
        except Exception as e:
            info.status = "error"
            info.error = str(e)
            self.logger.error(f"❌ 模型下载失败: {model_id} - {e}", exc_info=True)
            self._publish("error", model_id, message=str(e))
            raise
        finally:
            self._sessions.pop(model_id, None)

    def cancel_download(self, model_id: Optional[str] = None) -> dict:
        """
        取消下载

        Args:
            model_id: 模型ID；为 None 时取消该后端所有进行中的下载

        Returns:
            dict: {"success": bool, "message": str}
        """
        if model_id is not None:
            self.validate_model_name(model_id)
            targets = [model_id] if model_id in self._sessions else []
        else:
            targets = list(self._sessions.keys())

        if not targets:
            return {"success": False, "message": "没有正在进行的下载"}

        for target in targets:
            self.logger.info(f"取消下载: {target}")
            self._sessions[target].signal.abort()

        return {"success": True, "message": f"已取消下载: {', '.join(targets)}"}

    # ========== 删除 ==========

    def delete_model(self, model_id: str) -> bool:
        """
        删除模型（模型目录以及残留的归档/临时文件）

        Returns:
            bool: 是否删除了任何内容
        """
        descriptor = self.validate_model_name(model_id)
        if model_id in self._download_tasks:
            self.logger.warning(f"模型正在下载中，无法删除: {model_id}")
            return False

        model_path = self.get_model_path(model_id)
        leftovers = []
        if descriptor.is_archive:
            archive = self.models_dir / descriptor.file_name
            leftovers = [archive, archive.with_name(archive.name + ".tmp")]

        deleted = False
        if model_path.exists():
            shutil.rmtree(model_path)
            deleted = True
        for path in leftovers:
            if path.exists():
                path.unlink()
                deleted = True

        info = self.models[model_id]
        info.status = "not_downloaded"
        info.download_progress = 0.0
        info.local_path = None
        info.size_on_disk = 0
        info.error = None
        self.degraded_models.discard(model_id)

        if deleted:
            self.logger.info(f"已删除模型: {model_id}")
        return deleted

    def delete_all_models(self) -> dict:
        """删除该后端的所有模型，返回删除数量与释放的字节数"""
        deleted_count = 0
        freed_bytes = 0
        for model_id in list(self.models):
            size = ModelValidator.get_dir_size(self.models_dir / model_id)
            if self.delete_model(model_id):
                deleted_count += 1
                freed_bytes += size
        self.logger.info(f"已删除 {deleted_count} 个{self.backend}模型，释放 {round(freed_bytes / 1_000_000)}MB")
        return {"deleted_count": deleted_count, "freed_bytes": freed_bytes}

    # ========== 启动 ==========

    def initialize_at_startup(self) -> dict:
        """清理过期的下载残留并扫描已安装的模型"""
        stale_removed = cleanup_stale_downloads(self.models_dir)
        ready = [info.model_id for info in self.list_models() if info.status == "ready"]
        self.logger.info(f"{self.backend} 模型扫描完成: 已就绪 {ready or '无'}")
        return {"stale_removed": stale_removed, "ready_models": ready}
