"""
本地推理服务进程监管（llama / parakeet 共用）

核心特性：
1. 同一后端最多一个进程，并发 start() 等待同一个启动任务
2. 启动阶段轮询 /health，进程提前退出时携带 stderr 报错
3. 就绪后周期性健康检查，连续失败只标记未就绪，不杀进程
4. stop() 总是安全的：取消所有后台任务并重置状态，从不抛出
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import ServerSettings, config
from core.errors import LocalRuntimeError, ProcessStartupError, RequestFailureError, ServerNotReadyError
from models.server_models import ServerState, ServerStatus
from services.server_utils import (
    build_process_env,
    find_available_port,
    graceful_stop_process,
    resolve_binary_path,
)

STDERR_SNIPPET_LIMIT = 500


class ProcessSupervisor:
    """服务进程监管基类，子类提供可执行文件名和启动参数"""

    backend = "generic"
    binary_base_name = ""
    binary_env_var: Optional[str] = None

    def __init__(self, settings: ServerSettings = None, binary_path: Optional[Path] = None):
        """
        Args:
            settings: 监管参数，默认按后端从 config 读取
            binary_path: 显式指定可执行文件（跳过查找）
        """
        self.settings = settings or config.get_server_settings(self.backend)
        self.logger = logging.getLogger(__name__)
        self.host = "127.0.0.1"

        self._binary_override = Path(binary_path) if binary_path else None
        self._cached_binary: Optional[Path] = None

        # 进程状态
        self.process: Optional[asyncio.subprocess.Process] = None
        self.port: Optional[int] = None
        self.ready = False
        self.model_path: Optional[str] = None
        self.health_failures = 0
        self.state = ServerState.STOPPED
        self.last_error: Optional[str] = None

        # 后台任务
        self._startup_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stream_tasks: List[asyncio.Task] = []
        self._stderr_buffer = ""

    @property
    def display_name(self) -> str:
        return self.binary_base_name or self.backend

    # ========== 可执行文件 ==========

    def get_binary_path(self) -> Optional[Path]:
        if self._binary_override is not None:
            return self._binary_override
        if self._cached_binary is None:
            self._cached_binary = resolve_binary_path(self.binary_base_name, self.binary_env_var)
        return self._cached_binary

    def is_available(self) -> bool:
        return self.get_binary_path() is not None

    def build_args(self, model_path: str, port: int, **options) -> List[str]:
        raise NotImplementedError

    def validate_model_path(self, model_path: str):
        if not Path(model_path).exists():
            raise ProcessStartupError(f"模型路径不存在: {model_path}", suggestion="请先下载该模型")

    # ========== 启动 ==========

    async def start(self, model_path, **options):
        """
        启动服务进程并等待就绪

        - 已有启动任务在进行：等待同一个任务
        - 已就绪且模型相同：直接返回
        - 运行的是其他模型：先停止再启动
        """
        model_path = str(model_path)

        if self._startup_task is not None:
            return await self._await_startup(self._startup_task)

        if self.ready and self.model_path == model_path:
            return

        task = asyncio.ensure_future(self._start_sequence(model_path, options))
        self._startup_task = task
        task.add_done_callback(self._on_startup_done)
        return await self._await_startup(task)

    async def _await_startup(self, task: asyncio.Task):
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # 启动任务被 stop() 取消，而调用方本身没有被取消
            current = asyncio.current_task()
            # Task.cancelling() 仅 Python 3.11+ 提供
            caller_cancelled = bool(getattr(current, "cancelling", lambda: 0)())
            if task.cancelled() and not caller_cancelled:
                raise ProcessStartupError(f"{self.display_name} 启动被 stop() 中止")
            raise

    def _on_startup_done(self, task: asyncio.Task):
        if self._startup_task is task:
            self._startup_task = None
        if not task.cancelled():
            # 取走异常，避免调用方取消等待后出现未处理异常告警
            task.exception()

    async def _start_sequence(self, model_path: str, options: Dict[str, Any]):
        if self.process is not None:
            await self._teardown()
        try:
            await self._do_start(model_path, options)
        except BaseException as e:
            await self._teardown()
            self.last_error = e.message if isinstance(e, LocalRuntimeError) else str(e) or type(e).__name__
            raise

    async def _do_start(self, model_path: str, options: Dict[str, Any]):
        binary = self.get_binary_path()
        if binary is None:
            raise ProcessStartupError(
                f"未找到 {self.display_name} 可执行文件",
                suggestion=f"请将其放到 resources/bin 或设置环境变量 {self.binary_env_var}",
            )
        self.validate_model_path(model_path)

        self.state = ServerState.STARTING
        self.last_error = None
        self.port = find_available_port(self.settings.port_range, self.host)
        self.model_path = model_path

        args = self.build_args(model_path, self.port, **options)
        self.logger.info(f"启动 {self.display_name}: port={self.port}, model={Path(model_path).name}")
        self.logger.debug(f"{self.display_name} 启动参数: {args}")

        self._stderr_buffer = ""
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary), *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(config.get_safe_temp_dir()),
                env=build_process_env(binary),
            )
        except OSError as e:
            raise ProcessStartupError(f"无法启动 {self.display_name}: {e}")

        self.process = process
        self._stream_tasks = [
            asyncio.ensure_future(self._read_stream(process.stdout, "stdout")),
            asyncio.ensure_future(self._read_stream(process.stderr, "stderr")),
        ]
        self._watch_task = asyncio.ensure_future(self._watch_process(process))

        started_at = asyncio.get_running_loop().time()
        await self.wait_for_ready(process)

        self.ready = True
        self.health_failures = 0
        self.state = ServerState.READY
        self._health_task = asyncio.ensure_future(self._health_loop())

        elapsed = asyncio.get_running_loop().time() - started_at
        self.logger.info(f"✅ {self.display_name} 已就绪 (port={self.port}, {elapsed:.1f}秒)")

    async def wait_for_ready(self, process: asyncio.subprocess.Process):
        """轮询 /health 直到返回200；进程提前退出或超时则报错"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.startup_timeout

        async with aiohttp.ClientSession() as session:
            while loop.time() < deadline:
                if process.returncode is not None:
                    # 等待输出读完，确保 stderr 完整
                    await asyncio.wait(self._stream_tasks, timeout=1.0)
                    stderr = self._stderr_buffer.strip()[:STDERR_SNIPPET_LIMIT]
                    detail = stderr or f"退出码 {process.returncode}"
                    raise ProcessStartupError(
                        f"{self.display_name} 启动过程中退出: {detail}",
                        stderr=stderr or None,
                        exit_code=process.returncode,
                    )

                if await self.check_health(session):
                    return

                await asyncio.sleep(self.settings.startup_poll_interval)

        stderr = self._stderr_buffer.strip()[:STDERR_SNIPPET_LIMIT]
        raise ProcessStartupError(
            f"{self.display_name} 未能在 {self.settings.startup_timeout:g} 秒内就绪",
            stderr=stderr or None,
        )

    async def _read_stream(self, stream: asyncio.StreamReader, name: str):
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            if name == "stderr":
                self._stderr_buffer = (self._stderr_buffer + text)[-self.settings.stderr_buffer_limit:]
            self.logger.debug(f"{self.display_name} {name}: {text.rstrip()}")

    async def _watch_process(self, process: asyncio.subprocess.Process):
        code = await process.wait()
        if self.process is not process:
            return

        self.logger.warning(f"{self.display_name} 进程意外退出 (退出码 {code})")
        self.last_error = f"进程意外退出 (退出码 {code})"
        self.process = None
        self.port = None
        self.ready = False
        self.model_path = None
        self.health_failures = 0
        self.state = ServerState.STOPPED
        self._cancel(self._health_task)
        self._health_task = None

    # ========== 健康检查 ==========

    async def check_health(self, session: Optional[aiohttp.ClientSession] = None) -> bool:
        if self.port is None:
            return False

        url = f"http://{self.host}:{self.port}/health"
        timeout = aiohttp.ClientTimeout(total=self.settings.health_check_timeout)
        try:
            if session is None:
                async with aiohttp.ClientSession() as own_session:
                    async with own_session.get(url, timeout=timeout) as response:
                        return response.status == 200
            async with session.get(url, timeout=timeout) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
            return False

    async def _health_loop(self):
        async with aiohttp.ClientSession() as session:
            while True:
                await asyncio.sleep(self.settings.health_check_interval)
                if self.process is None:
                    return

                if await self.check_health(session):
                    if self.health_failures >= self.settings.health_failure_threshold:
                        self.logger.info(f"{self.display_name} 健康检查恢复")
                    self.health_failures = 0
                    if not self.ready:
                        self.ready = True
                        self.state = ServerState.READY
                    continue

                self.health_failures += 1
                self.logger.debug(f"{self.display_name} 健康检查失败 ({self.health_failures})")
                if self.health_failures >= self.settings.health_failure_threshold and self.ready:
                    self.logger.warning(
                        f"⚠️ {self.display_name} 连续 {self.health_failures} 次健康检查失败，标记为未就绪"
                    )
                    self.ready = False
                    self.state = ServerState.DEGRADED

    # ========== 请求 ==========

    def ensure_ready(self):
        if not self.ready or self.process is None:
            raise ServerNotReadyError(f"{self.display_name} 未运行", suggestion="请先启动服务")

    async def post_json(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        向运行中的服务发送 JSON 请求

        Raises:
            ServerNotReadyError: 服务未就绪
            RequestFailureError: 非200响应或响应无法解析
        """
        self.ensure_ready()
        url = f"http://{self.host}:{self.port}{path}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload,
                                        timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                    body = await response.text()
                    status = response.status
        except asyncio.TimeoutError:
            raise RequestFailureError(f"{self.display_name} 请求超时 ({timeout:g}秒)")
        except aiohttp.ClientError as e:
            raise RequestFailureError(f"{self.display_name} 请求失败: {e}")

        if status != 200:
            raise RequestFailureError(
                f"{self.display_name} 返回状态码 {status}",
                status_code=status,
                body=body[:STDERR_SNIPPET_LIMIT],
            )

        try:
            data = json.loads(body)
        except ValueError as e:
            raise RequestFailureError(
                f"无法解析 {self.display_name} 响应: {e}",
                status_code=status,
                body=body[:STDERR_SNIPPET_LIMIT],
            )
        if not isinstance(data, dict):
            raise RequestFailureError(
                f"{self.display_name} 响应格式异常",
                status_code=status,
                body=body[:STDERR_SNIPPET_LIMIT],
            )
        return data

    # ========== 停止 ==========

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]):
        if task is not None and not task.done():
            task.cancel()

    async def _teardown(self):
        """结束进程、取消后台任务、重置状态（不抛出）"""
        process = self.process
        tasks = [t for t in [self._health_task, self._watch_task, *self._stream_tasks] if t is not None]
        self._health_task = None
        self._watch_task = None
        self._stream_tasks = []

        # 先解除关联，避免监视任务把主动停止当成意外退出
        self.process = None
        for task in tasks:
            self._cancel(task)

        try:
            if process is not None and process.returncode is None:
                self.logger.info(f"停止 {self.display_name} (pid={process.pid})")
                await graceful_stop_process(process, self.settings.graceful_stop_timeout)
        except Exception as e:
            self.logger.error(f"停止 {self.display_name} 失败: {e}")
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self.port = None
            self.ready = False
            self.model_path = None
            self.health_failures = 0
            self.state = ServerState.STOPPED

    async def stop(self):
        """停止服务进程（没有进程时也会重置状态）"""
        startup = self._startup_task
        if startup is not None and startup is not asyncio.current_task():
            self._cancel(startup)
        await self._teardown()

    # ========== 状态 ==========

    def status(self) -> ServerStatus:
        binary = self.get_binary_path()
        return ServerStatus(
            backend=self.backend,
            state=self.state,
            available=binary is not None,
            running=self.process is not None and self.process.returncode is None,
            ready=self.ready,
            port=self.port,
            model_path=self.model_path,
            model_name=Path(self.model_path).name if self.model_path else None,
            pid=self.process.pid if self.process is not None else None,
            health_failures=self.health_failures,
            last_error=self.last_error,
            binary_path=str(binary) if binary else None,
        )
