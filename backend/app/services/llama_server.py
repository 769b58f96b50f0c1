"""
llama-server 管理（OpenAI 兼容的本地文本生成服务）
"""

import json
import time
from typing import Dict, List, Optional

from core.config import config
from core.errors import RequestFailureError
from services.process_supervisor import STDERR_SNIPPET_LIMIT, ProcessSupervisor


class LlamaServerManager(ProcessSupervisor):
    """llama.cpp llama-server 进程管理 + 推理请求"""

    backend = "llama"
    binary_base_name = "llama-server"
    binary_env_var = "LLAMA_SERVER_PATH"

    def build_args(self, model_path: str, port: int, context_size: Optional[int] = None,
                   threads: Optional[int] = None, gpu_layers: Optional[int] = None, **options) -> List[str]:
        args = [
            "--model", str(model_path),
            "--host", self.host,
            "--port", str(port),
            "--ctx-size", str(context_size or config.LLAMA_CONTEXT_SIZE),
            "--threads", str(threads or config.LLAMA_THREADS),
        ]
        gpu_layers = config.LLAMA_GPU_LAYERS if gpu_layers is None else gpu_layers
        if gpu_layers:
            args += ["--n-gpu-layers", str(gpu_layers)]
        return args

    async def inference(self, messages: List[Dict[str, str]], options: Optional[Dict] = None) -> str:
        """
        调用 /v1/chat/completions

        Args:
            messages: OpenAI 格式的消息列表
            options: temperature / max_tokens

        Returns:
            str: 生成的文本（已去除首尾空白）
        """
        options = options or {}
        payload = {
            "messages": messages,
            "temperature": options.get("temperature", config.DEFAULT_TEMPERATURE),
            "max_tokens": options.get("max_tokens", config.DEFAULT_MAX_TOKENS),
            "stream": False,
        }

        started = time.monotonic()
        response = await self.post_json("/v1/chat/completions", payload, timeout=config.INFERENCE_TIMEOUT)
        self.logger.debug(f"llama-server 推理完成: {time.monotonic() - started:.2f}秒")

        choices = response.get("choices") or [{}]
        first = choices[0] if isinstance(choices, list) else None
        message = (first.get("message") or {}) if isinstance(first, dict) else None
        content = (message.get("content") or "") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise RequestFailureError(
                "llama-server 响应格式异常: choices[0].message.content 无效",
                status_code=200,
                body=json.dumps(response, ensure_ascii=False)[:STDERR_SNIPPET_LIMIT],
            )
        return content.strip()

