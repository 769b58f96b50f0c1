"""
路由公共工具：运行时异常 -> HTTP 状态码
"""
from fastapi import HTTPException

from core.errors import (
    AudioFormatError,
    DiskSpaceError,
    DownloadCancelledError,
    LocalRuntimeError,
    ModelNotInstalledError,
    ProcessStartupError,
    RequestFailureError,
    ServerNotReadyError,
    UnknownModelError,
)

STATUS_CODES = [
    (UnknownModelError, 404),
    (ModelNotInstalledError, 409),
    (DownloadCancelledError, 409),
    (AudioFormatError, 400),
    (DiskSpaceError, 507),
    (ServerNotReadyError, 503),
    (RequestFailureError, 502),
    (ProcessStartupError, 500),
]


def to_http_exception(error: LocalRuntimeError) -> HTTPException:
    status_code = 500
    for error_type, code in STATUS_CODES:
        if isinstance(error, error_type):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail=error.to_dict())
