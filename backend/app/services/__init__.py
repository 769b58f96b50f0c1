"""
初始化服务包
"""
from .runtime_service import LocalRuntime
from .model_manager_service import ModelManagerService
from .download_service import DownloadService, DownloadSignal

__all__ = ['LocalRuntime', 'ModelManagerService', 'DownloadService', 'DownloadSignal']
