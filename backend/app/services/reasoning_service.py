"""
本地文本整理服务（基于 llama-server）
"""
import logging
import re
import time
from typing import Dict, List, Optional

from config.model_registry import DEFAULT_MODELS
from core.errors import RequestFailureError
from services.llama_server import LlamaServerManager
from services.model_manager_service import ModelManagerService

logger = logging.getLogger(__name__)

MIN_TOKENS = 100
MAX_TOKENS = 2048
TOKEN_MULTIPLIER = 2

# 模型可能在结尾输出的结束标记
END_TOKEN_PATTERNS = [
    re.compile(r"<\|im_end\|>$"),
    re.compile(r"<\|end\|>$"),
    re.compile(r"</s>$"),
    re.compile(r"\[end of text\]$", re.IGNORECASE),
]


def calculate_max_tokens(text_length: int, min_tokens: int = MIN_TOKENS,
                         max_tokens: int = MAX_TOKENS, multiplier: int = TOKEN_MULTIPLIER) -> int:
    return max(min_tokens, min(max_tokens, text_length * multiplier))


def strip_end_tokens(text: str) -> str:
    result = (text or "").strip()
    for pattern in END_TOKEN_PATTERNS:
        result = pattern.sub("", result).strip()
    return result


class ReasoningService:
    """把一段文本交给本地模型处理并返回清理后的结果"""

    def __init__(self, model_manager: ModelManagerService, server: LlamaServerManager):
        self.model_manager = model_manager
        self.server = server
        self.is_processing = False

    async def process_text(self, text: str, model_id: Optional[str] = None,
                           system_prompt: Optional[str] = None, max_tokens: Optional[int] = None,
                           temperature: Optional[float] = None) -> str:
        if self.is_processing:
            raise RequestFailureError("已有文本处理请求正在进行")

        model_id = model_id or DEFAULT_MODELS["llama"]
        model_file = self.model_manager.get_model_file(model_id)
        self.model_manager.require_installed(model_id)

        self.is_processing = True
        started = time.monotonic()
        try:
            await self.server.start(model_file)

            messages: List[Dict[str, str]] = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append({"role": "user", "content": text})

            options = {"max_tokens": max_tokens or calculate_max_tokens(len(text))}
            if temperature is not None:
                options["temperature"] = temperature

            logger.debug(f"本地模型处理: model={model_id}, max_tokens={options['max_tokens']}")
            result = strip_end_tokens(await self.server.inference(messages, options))
            logger.info(f"本地模型处理完成: {time.monotonic() - started:.2f}秒, {len(result)} 字符")
            return result
        finally:
            self.is_processing = False
