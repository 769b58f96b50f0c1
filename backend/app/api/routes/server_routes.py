"""
本地推理服务进程API路由
"""
from typing import Optional
import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from api.routes.common import to_http_exception
from core.errors import LocalRuntimeError
from services.runtime_service import LocalRuntime

logger = logging.getLogger(__name__)


class StartServerRequest(BaseModel):
    model_id: str
    context_size: Optional[int] = None
    threads: Optional[int] = None
    gpu_layers: Optional[int] = None


class StopServerRequest(BaseModel):
    backend: Optional[str] = None


def create_server_router(runtime: LocalRuntime) -> APIRouter:
    """创建服务进程管理路由"""
    router = APIRouter(prefix="/api/servers", tags=["servers"])

    @router.post("/start")
    async def start_server(body: StartServerRequest):
        options = body.dict(exclude={"model_id"}, exclude_none=True)
        try:
            status = await runtime.start(body.model_id, **options)
        except LocalRuntimeError as e:
            raise to_http_exception(e)
        return {"success": True, "status": status.to_dict()}

    @router.post("/stop")
    async def stop_server(body: Optional[StopServerRequest] = None):
        backend = body.backend if body else None
        if backend is not None and backend not in runtime.servers:
            raise HTTPException(status_code=400, detail=f"未知后端: {backend}")
        await runtime.stop(backend)
        return {"success": True}

    @router.get("/status")
    async def server_status():
        return {backend: status.to_dict() for backend, status in runtime.status().items()}

    @router.get("/diagnostics")
    async def diagnostics():
        return runtime.get_diagnostics()

    return router
