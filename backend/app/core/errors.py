"""
统一异常定义

所有异常都会抛给调用层，不会终止宿主进程。
异常携带足够的诊断上下文（stderr、退出码、字节数、HTTP状态码），
便于调用方给出可操作的提示。
"""

from typing import Iterable, Optional


class LocalRuntimeError(Exception):
    """本地推理运行时异常基类"""

    retryable = False

    def __init__(self, message: str, suggestion: Optional[str] = None, **context):
        self.message = message
        self.suggestion = suggestion
        self.context = context
        super().__init__(self.format_message())

    def format_message(self) -> str:
        msg = self.message
        if self.suggestion:
            msg += f"\n  建议: {self.suggestion}"
        return msg

    def to_dict(self) -> dict:
        """转换为字典（用于 API 响应）"""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "suggestion": self.suggestion,
            "context": {k: v for k, v in self.context.items() if v is not None},
        }


# ========== 网络 / 下载 ==========

class NetworkTransientError(LocalRuntimeError):
    """瞬时网络错误（连接重置、超时、下载停滞），内部自动重试"""
    retryable = True


class IncompleteDownloadError(NetworkTransientError):
    """传输提前结束，收到的字节数少于声明的总大小"""

    def __init__(self, received: int, total: int):
        self.received = received
        self.total = total
        super().__init__(
            f"下载不完整: 收到 {received} / {total} 字节",
            received=received,
            total=total,
        )


class HttpStatusError(LocalRuntimeError):
    """HTTP状态码错误（不重试）"""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        super().__init__(message, status_code=status_code, url=url)


class DownloadCancelledError(LocalRuntimeError):
    """用户取消下载（不重试，临时文件总是被清理）"""

    def __init__(self, message: str = "下载已取消"):
        super().__init__(message)


class CorruptDownloadError(LocalRuntimeError):
    """下载文件大小/内容校验失败（损坏文件已删除）"""

    def __init__(self, actual_bytes: int, expected_min_bytes: int):
        self.actual_bytes = actual_bytes
        self.expected_min_bytes = expected_min_bytes
        super().__init__(
            f"下载文件可能已损坏: 文件大小 {round(actual_bytes / 1_000_000)}MB, "
            f"至少应为 {round(expected_min_bytes / 1_000_000)}MB",
            suggestion="请重新下载",
            actual_bytes=actual_bytes,
            expected_min_bytes=expected_min_bytes,
        )


class DiskSpaceError(LocalRuntimeError):
    """磁盘空间不足"""

    def __init__(self, required_bytes: int, available_bytes: int):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"磁盘空间不足，无法下载并解压模型。需要约 {round(required_bytes / 1_000_000)}MB, "
            f"当前仅剩 {round(available_bytes / 1_000_000)}MB",
            suggestion="清理磁盘空间后重试",
            required_bytes=required_bytes,
            available_bytes=available_bytes,
        )


# ========== 模型注册表 / 安装 ==========

class UnknownModelError(LocalRuntimeError):
    """模型ID不在注册表中"""

    def __init__(self, model_id: str, valid_ids: Iterable[str], backend: Optional[str] = None):
        self.model_id = model_id
        self.valid_ids = list(valid_ids)
        scope = f"{backend} " if backend else ""
        super().__init__(
            f"无效的{scope}模型: {model_id}",
            suggestion=f"可用模型: {', '.join(self.valid_ids)}",
            model_id=model_id,
            backend=backend,
        )


class ModelNotInstalledError(LocalRuntimeError):
    """模型未下载或文件不完整"""

    def __init__(self, model_id: str, missing_files: Optional[list] = None):
        self.model_id = model_id
        self.missing_files = missing_files or []
        super().__init__(
            f"模型未下载: {model_id}",
            suggestion="请先下载该模型",
            model_id=model_id,
            missing_files=self.missing_files or None,
        )


class ExtractionError(LocalRuntimeError):
    """归档解压失败或解压结果布局不符"""


# ========== 服务进程 ==========

class ProcessStartupError(LocalRuntimeError):
    """服务进程启动失败（可执行文件缺失、端口耗尽、提前退出、健康检查超时）"""

    def __init__(self, message: str, stderr: Optional[str] = None, exit_code: Optional[int] = None,
                 suggestion: Optional[str] = None):
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(message, suggestion=suggestion, stderr=stderr, exit_code=exit_code)


class ServerNotReadyError(LocalRuntimeError):
    """服务未运行或未就绪"""


class RequestFailureError(LocalRuntimeError):
    """运行中的服务返回非200或无法解析的响应"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message, status_code=status_code, body=body)


# ========== 音频 ==========

class AudioFormatError(LocalRuntimeError):
    """音频数据为空或无法转换"""


def is_retryable(error: BaseException) -> bool:
    """判断错误是否可以重试（仅瞬时网络错误）"""
    return isinstance(error, LocalRuntimeError) and error.retryable
