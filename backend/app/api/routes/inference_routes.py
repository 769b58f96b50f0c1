"""
转录 / 文本生成API路由
"""
from typing import List, Optional
import logging

from fastapi import APIRouter, File, Form, UploadFile
from pydantic import BaseModel

from api.routes.common import to_http_exception
from core.errors import LocalRuntimeError
from services.runtime_service import LocalRuntime

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: str
    content: str


class InferenceBody(BaseModel):
    messages: List[ChatMessage]
    model_id: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ReasoningBody(BaseModel):
    text: str
    model_id: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


def create_inference_router(runtime: LocalRuntime) -> APIRouter:
    """创建转录与推理路由"""
    router = APIRouter(prefix="/api", tags=["inference"])

    @router.post("/transcribe")
    async def transcribe(
        file: UploadFile = File(...),
        model_id: Optional[str] = Form(None),
        language: Optional[str] = Form(None),
    ):
        """上传音频并转录"""
        audio = await file.read()
        try:
            result = await runtime.transcribe(audio, {"model_id": model_id, "language": language})
        except LocalRuntimeError as e:
            raise to_http_exception(e)
        return result.to_dict()

    @router.post("/inference")
    async def inference(body: InferenceBody):
        """OpenAI 格式的对话请求"""
        options = {"model_id": body.model_id}
        if body.temperature is not None:
            options["temperature"] = body.temperature
        if body.max_tokens is not None:
            options["max_tokens"] = body.max_tokens

        try:
            text = await runtime.inference([m.dict() for m in body.messages], options)
        except LocalRuntimeError as e:
            raise to_http_exception(e)
        return {"success": True, "text": text}

    @router.post("/reasoning")
    async def reasoning(body: ReasoningBody):
        """用本地模型整理一段文本"""
        try:
            text = await runtime.process_text(
                body.text,
                model_id=body.model_id,
                system_prompt=body.system_prompt,
                max_tokens=body.max_tokens,
                temperature=body.temperature,
            )
        except LocalRuntimeError as e:
            raise to_http_exception(e)
        return {"success": True, "text": text}

    return router
