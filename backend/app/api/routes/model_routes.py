"""
模型管理API路由
"""

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import AsyncGenerator, Optional
import asyncio
import json
import time
import logging

from api.routes.common import to_http_exception
from config.model_registry import BACKENDS
from core.errors import LocalRuntimeError
from services.runtime_service import LocalRuntime

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 15  # 秒


class DownloadRequest(BaseModel):
    prewarm: bool = False


class CancelDownloadRequest(BaseModel):
    model_id: Optional[str] = None


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def create_model_router(runtime: LocalRuntime) -> APIRouter:
    """创建模型管理路由"""
    router = APIRouter(prefix="/api/models", tags=["models"])

    @router.get("")
    async def list_models(backend: Optional[str] = Query(None)):
        """列出模型（可按后端过滤）"""
        if backend is not None and backend not in BACKENDS:
            raise HTTPException(status_code=400, detail=f"未知后端: {backend}")
        return [info.to_dict() for info in runtime.list_models(backend)]

    @router.get("/events/progress")
    async def stream_progress(request: Request):
        """
        SSE端点：实时推送所有模型下载进度

        Returns:
            StreamingResponse: SSE事件流
        """
        async def event_generator() -> AsyncGenerator[str, None]:
            queue = runtime.progress.open_queue()
            try:
                # 新连接先推送当前状态
                latest = runtime.progress.latest()
                yield _sse("init", {model_id: event.to_dict() for model_id, event in latest.items()})

                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL)
                    except asyncio.TimeoutError:
                        yield _sse("heartbeat", {"timestamp": int(time.time())})
                        continue
                    yield _sse(event.type, event.to_dict())
            finally:
                runtime.progress.close_queue(queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @router.post("/download/cancel")
    async def cancel_download(body: CancelDownloadRequest):
        """取消下载（不指定模型时取消全部）"""
        try:
            return runtime.cancel_download(body.model_id)
        except LocalRuntimeError as e:
            raise to_http_exception(e)

    @router.get("/{model_id}")
    async def get_model(model_id: str):
        """查询单个模型状态"""
        try:
            manager = runtime.manager_for_model(model_id)
            info = manager.check_model_status(model_id)
            descriptor = manager.validate_model_name(model_id)
        except LocalRuntimeError as e:
            raise to_http_exception(e)
        return {**descriptor.to_dict(), **info.to_dict(),
                "degraded": model_id in manager.degraded_models}

    @router.post("/{model_id}/download")
    async def download_model(model_id: str, body: Optional[DownloadRequest] = None):
        """
        开始下载模型（后台进行，进度通过SSE推送）

        Args:
            model_id: 模型ID
        """
        try:
            manager = runtime.manager_for_model(model_id)
            if manager.is_model_downloading(model_id):
                return {"success": True, "message": f"模型正在下载中: {model_id}"}
            if manager.is_model_downloaded(model_id):
                return {"success": True, "message": f"模型已下载: {model_id}"}
            runtime.start_download(model_id, prewarm=body.prewarm if body else False)
            return {"success": True, "message": f"开始下载模型 {model_id}"}
        except LocalRuntimeError as e:
            raise to_http_exception(e)

    @router.delete("/{model_id}")
    async def delete_model(model_id: str):
        """删除指定的模型"""
        try:
            deleted = await runtime.delete_model(model_id)
        except LocalRuntimeError as e:
            raise to_http_exception(e)
        if not deleted:
            raise HTTPException(status_code=400, detail="删除失败：模型未下载或正在下载中")
        return {"success": True, "message": f"已删除模型 {model_id}"}

    return router
