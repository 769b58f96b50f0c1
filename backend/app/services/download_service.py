"""
模型文件下载服务
- 断点续传（HTTP Range）
- 指数退避重试（仅瞬时网络错误）
- 下载停滞检测
- 进度节流回调
- 原子提交（临时文件 -> 目标文件）
- 磁盘空间预检、过期临时文件清理
"""

import asyncio
import errno
import logging
import math
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Tuple
from urllib.parse import urljoin

import aiohttp
import psutil

from core.config import config
from core.errors import (
    CorruptDownloadError,
    DownloadCancelledError,
    HttpStatusError,
    IncompleteDownloadError,
    LocalRuntimeError,
    NetworkTransientError,
    is_retryable,
)

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
TEMP_SUFFIX = ".tmp"
EXTRACT_DIR_PREFIX = "temp-extract-"

ProgressFn = Callable[[int, int], None]


class DownloadSignal:
    """下载取消令牌（协作式取消，可打断正在阻塞的网络读取）"""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self):
        self._event.set()

    async def wait(self):
        await self._event.wait()


@dataclass
class DownloadSession:
    """一次进行中的下载（每个模型同一时间最多一个）"""
    url: str
    dest_path: Path
    signal: DownloadSignal = field(default_factory=DownloadSignal)
    resume_offset: int = 0
    retries: int = 0
    final_url: Optional[str] = None

    @property
    def temp_path(self) -> Path:
        return self.dest_path.with_name(self.dest_path.name + TEMP_SUFFIX)


class ProgressThrottle:
    """进度节流：首个数据块和完成时必定触发，其余按最小间隔触发"""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def should_emit(self, downloaded: int, total: int) -> bool:
        now = self._clock()
        if self._last is None or downloaded >= total or now - self._last >= self.interval:
            self._last = now
            return True
        return False


def _parse_content_range_total(content_range: Optional[str]) -> int:
    """从 Content-Range: bytes 100-199/200 中解析总大小"""
    if not content_range:
        return 0
    match = re.search(r"/(\d+)$", content_range.strip())
    return int(match.group(1)) if match else 0


class DownloadService:
    """可续传、带重试的文件下载器"""

    def __init__(
        self,
        timeout: float = None,
        max_retries: int = None,
        max_redirects: int = None,
        stall_timeout: float = None,
        progress_throttle: float = None,
        chunk_size: int = None,
        base_backoff: float = 1.0,
        max_backoff: float = None,
        user_agent: str = None,
    ):
        self.timeout = timeout if timeout is not None else config.DOWNLOAD_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else config.DOWNLOAD_MAX_RETRIES
        self.max_redirects = max_redirects if max_redirects is not None else config.DOWNLOAD_MAX_REDIRECTS
        self.stall_timeout = stall_timeout if stall_timeout is not None else config.DOWNLOAD_STALL_TIMEOUT
        self.progress_throttle = (
            progress_throttle if progress_throttle is not None else config.DOWNLOAD_PROGRESS_THROTTLE
        )
        self.chunk_size = chunk_size or config.DOWNLOAD_CHUNK_SIZE
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff if max_backoff is not None else config.DOWNLOAD_MAX_BACKOFF
        self.user_agent = user_agent or config.DOWNLOAD_USER_AGENT

    def _new_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(headers={"User-Agent": self.user_agent})

    def backoff_delay(self, attempt: int) -> float:
        """指数退避：1s, 2s, 4s ... 上限 max_backoff"""
        return min(self.base_backoff * (2 ** attempt), self.max_backoff)

    async def resolve_redirects(self, url: str, session: aiohttp.ClientSession = None) -> Tuple[str, int]:
        """
        通过 HEAD 请求逐跳解析重定向

        Args:
            url: 初始地址
            session: 复用的 ClientSession（可选）

        Returns:
            Tuple[str, int]: (最终地址, 最终状态码)

        Raises:
            HttpStatusError: 重定向次数超限或缺少 Location 头
            NetworkTransientError: 探测请求网络失败
        """
        own_session = session is None
        if own_session:
            session = self._new_session()

        try:
            current_url = url
            for _ in range(self.max_redirects + 1):
                try:
                    async with session.head(
                        current_url,
                        allow_redirects=False,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        status = response.status
                        location = response.headers.get("Location")
                except asyncio.TimeoutError:
                    raise NetworkTransientError("解析重定向超时", url=current_url)
                except aiohttp.ClientError as e:
                    raise NetworkTransientError(f"解析重定向失败: {e}", url=current_url)

                if status in REDIRECT_STATUS_CODES:
                    if not location:
                        raise HttpStatusError("重定向缺少 Location 头", status_code=status, url=current_url)
                    current_url = urljoin(current_url, location)
                    continue

                return current_url, status

            raise HttpStatusError(f"重定向次数过多（超过 {self.max_redirects} 次）", url=url)
        finally:
            if own_session:
                await session.close()

    async def _race_stall(self, awaitable, signal: Optional[DownloadSignal], stall_message: str):
        """等待网络操作；停滞超时或收到取消信号时中断"""
        op_task = asyncio.ensure_future(awaitable)
        abort_task = asyncio.ensure_future(signal.wait()) if signal else None
        waiters = {op_task, abort_task} if abort_task else {op_task}

        try:
            done, _ = await asyncio.wait(waiters, timeout=self.stall_timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
            if op_task in done:
                return op_task.result()
        finally:
            if abort_task and not abort_task.done():
                abort_task.cancel()
            if not op_task.done():
                op_task.cancel()

        if signal and signal.aborted:
            raise DownloadCancelledError()
        raise NetworkTransientError(stall_message, stall_timeout=self.stall_timeout)

    async def _open_response(self, session: aiohttp.ClientSession, url: str, headers: dict,
                             signal: Optional[DownloadSignal]) -> aiohttp.ClientResponse:
        """发送请求并等待响应头（服务器接受连接但不响应时同样按停滞处理）"""
        # 读取阶段由停滞计时器控制，这里只限制连接耗时
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.timeout)

        async def request():
            return await session.get(url, headers=headers, timeout=timeout)

        return await self._race_stall(
            request(), signal,
            f"下载停滞: 服务器 {self.stall_timeout:g}秒内未返回响应",
        )

    async def _read_chunk(self, response: aiohttp.ClientResponse, signal: Optional[DownloadSignal]) -> bytes:
        """读取一个数据块；停滞超时或收到取消信号时中断读取"""
        return await self._race_stall(
            response.content.read(self.chunk_size), signal,
            f"下载停滞: {self.stall_timeout:g}秒内未收到数据",
        )

    async def download_attempt(
        self,
        session: aiohttp.ClientSession,
        url: str,
        temp_path: Path,
        start_offset: int = 0,
        on_progress: Optional[ProgressFn] = None,
        signal: Optional[DownloadSignal] = None,
    ) -> Tuple[int, int]:
        """
        单次下载尝试

        Args:
            session: ClientSession
            url: 已解析重定向的地址
            temp_path: 临时文件路径
            start_offset: 续传起点（>0 时追加写入并发送 Range 头）
            on_progress: 进度回调 (已下载字节, 总字节)
            signal: 取消令牌

        Returns:
            Tuple[int, int]: (已下载字节, 总字节)
        """
        if signal and signal.aborted:
            raise DownloadCancelledError()

        headers = {}
        if start_offset > 0:
            headers["Range"] = f"bytes={start_offset}-"

        loop = asyncio.get_running_loop()
        downloaded = start_offset
        total = 0

        try:
            response = await self._open_response(session, url, headers, signal)
            async with response:
                status = response.status
                mode = "ab" if start_offset > 0 else "wb"

                if status == 200 and start_offset > 0:
                    # 服务器忽略了 Range，丢弃已下载部分从头开始
                    logger.warning(f"服务器不支持断点续传，从头开始下载: {temp_path.name}")
                    downloaded = 0
                    mode = "wb"
                    total = response.content_length or 0
                elif status == 206:
                    total = _parse_content_range_total(response.headers.get("Content-Range"))
                    if not total:
                        total = start_offset + (response.content_length or 0)
                elif status == 200:
                    total = response.content_length or 0
                else:
                    raise HttpStatusError(f"HTTP {status}", status_code=status, url=url)

                throttle = ProgressThrottle(self.progress_throttle)

                with open(temp_path, mode) as f:
                    while True:
                        if signal and signal.aborted:
                            raise DownloadCancelledError()

                        chunk = await self._read_chunk(response, signal)
                        if not chunk:
                            break

                        await loop.run_in_executor(None, f.write, chunk)
                        downloaded += len(chunk)

                        if on_progress and total > 0 and throttle.should_emit(downloaded, total):
                            on_progress(downloaded, total)

        except (aiohttp.ClientPayloadError, aiohttp.ClientConnectionError) as e:
            if signal and signal.aborted:
                raise DownloadCancelledError()
            raise NetworkTransientError(f"网络连接中断: {e}", url=url, received=downloaded)
        except asyncio.TimeoutError:
            raise NetworkTransientError("连接超时", url=url, received=downloaded)

        if total > 0 and downloaded < total:
            raise IncompleteDownloadError(downloaded, total)

        return downloaded, total

    @staticmethod
    def _get_resume_offset(temp_path: Path) -> int:
        try:
            return temp_path.stat().st_size
        except OSError:
            return 0

    @staticmethod
    def _remove_temp(temp_path: Path):
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"删除临时文件失败: {temp_path} - {e}")

    @staticmethod
    def _commit(temp_path: Path, dest_path: Path):
        """临时文件 -> 目标文件（跨文件系统时回退为复制+删除）"""
        try:
            os.replace(temp_path, dest_path)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.copyfile(temp_path, dest_path)
            DownloadService._remove_temp(temp_path)

    async def _sleep_or_abort(self, delay: float, signal: Optional[DownloadSignal]):
        """退避等待，期间收到取消信号立即返回"""
        if signal is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(signal.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def download(self, session_info: DownloadSession, on_progress: Optional[ProgressFn] = None,
                       max_retries: int = None) -> Path:
        """
        执行下载会话（续传 + 重试 + 原子提交）

        Args:
            session_info: 下载会话
            on_progress: 进度回调 (已下载字节, 总字节)
            max_retries: 最大重试次数，默认使用配置

        Returns:
            Path: 目标文件路径
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        dest_path = session_info.dest_path
        temp_path = session_info.temp_path
        signal = session_info.signal

        dest_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"开始下载: {session_info.url[:80]} -> {dest_path}")

        session_info.resume_offset = self._get_resume_offset(temp_path)
        if session_info.resume_offset > 0:
            logger.info(f"发现未完成的下载，从 {session_info.resume_offset} 字节处续传")

        async with self._new_session() as session:
            if signal.aborted:
                self._remove_temp(temp_path)
                raise DownloadCancelledError()

            final_url, _ = await self.resolve_redirects(session_info.url, session)
            session_info.final_url = final_url

            last_error: Optional[BaseException] = None
            for attempt in range(max_retries + 1):
                if signal.aborted:
                    self._remove_temp(temp_path)
                    raise DownloadCancelledError()

                if attempt > 0:
                    delay = self.backoff_delay(attempt - 1)
                    logger.info(f"第 {attempt}/{max_retries} 次重试，{delay:g}秒后开始 (offset={session_info.resume_offset})")
                    await self._sleep_or_abort(delay, signal)
                    if signal.aborted:
                        self._remove_temp(temp_path)
                        raise DownloadCancelledError()
                    # 上一次尝试可能写入了部分数据
                    session_info.resume_offset = self._get_resume_offset(temp_path)
                    session_info.retries = attempt

                try:
                    await self.download_attempt(
                        session, final_url, temp_path,
                        start_offset=session_info.resume_offset,
                        on_progress=on_progress,
                        signal=signal,
                    )
                    self._commit(temp_path, dest_path)
                    logger.info(f"下载完成: {dest_path}")
                    return dest_path

                except DownloadCancelledError:
                    self._remove_temp(temp_path)
                    logger.info(f"下载已取消: {dest_path.name}")
                    raise
                except asyncio.CancelledError:
                    self._remove_temp(temp_path)
                    raise
                except LocalRuntimeError as e:
                    last_error = e
                    if not is_retryable(e) or attempt >= max_retries:
                        self._remove_temp(temp_path)
                        logger.error(f"下载失败: {dest_path.name} - {e.message}")
                        raise
                    logger.warning(f"下载尝试 {attempt + 1} 失败: {e.message}")
                except Exception:
                    self._remove_temp(temp_path)
                    raise

        self._remove_temp(temp_path)
        raise last_error

    async def download_file(
        self,
        url: str,
        dest_path,
        on_progress: Optional[ProgressFn] = None,
        signal: Optional[DownloadSignal] = None,
        max_retries: int = None,
    ) -> Path:
        """
        下载文件到目标路径（临时文件为 dest + ".tmp"）

        Args:
            url: 下载地址
            dest_path: 目标路径
            on_progress: 进度回调 (已下载字节, 总字节)
            signal: 取消令牌
            max_retries: 最大重试次数

        Returns:
            Path: 目标文件路径
        """
        session_info = DownloadSession(url=url, dest_path=Path(dest_path))
        if signal is not None:
            session_info.signal = signal
        return await self.download(session_info, on_progress=on_progress, max_retries=max_retries)


def validate_file_size(file_path, expected_size_bytes: int, tolerance_percent: float = 10) -> int:
    """
    校验下载文件大小，过小则删除并报错

    Args:
        file_path: 文件路径
        expected_size_bytes: 预期大小
        tolerance_percent: 容差百分比

    Returns:
        int: 实际文件大小

    Raises:
        CorruptDownloadError: 文件小于 expected * (1 - tolerance)
    """
    file_path = Path(file_path)
    size = file_path.stat().st_size
    min_size = expected_size_bytes * (1 - tolerance_percent / 100)
    if size < min_size:
        try:
            file_path.unlink()
        except OSError as e:
            logger.warning(f"删除损坏文件失败: {file_path} - {e}")
        raise CorruptDownloadError(size, int(min_size))
    return size


def cleanup_stale_downloads(directory, max_age_seconds: float = None) -> int:
    """
    清理过期的下载临时文件和解压临时目录

    Args:
        directory: 模型目录
        max_age_seconds: 过期时间，默认24小时

    Returns:
        int: 清理的条目数
    """
    max_age = config.STALE_DOWNLOAD_AGE if max_age_seconds is None else max_age_seconds
    directory = Path(directory)
    removed = 0

    try:
        entries = list(directory.iterdir())
    except OSError:
        # 目录可能还不存在
        return 0

    now = time.time()
    for entry in entries:
        if not entry.name.endswith(TEMP_SUFFIX) and not entry.name.startswith(EXTRACT_DIR_PREFIX):
            continue
        try:
            if now - entry.stat().st_mtime <= max_age:
                continue
            if entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink()
            removed += 1
            logger.info(f"已清理过期下载残留: {entry}")
        except OSError as e:
            logger.debug(f"跳过无法清理的条目: {entry} - {e}")

    return removed


def check_disk_space(directory, required_bytes: int) -> Tuple[bool, float]:
    """
    检查磁盘可用空间（仅供参考，平台不支持时默认通过）

    Returns:
        Tuple[bool, float]: (空间是否足够, 可用字节数)
    """
    try:
        path = Path(directory)
        # 目录尚未创建时检查最近的已存在父目录
        while not path.exists() and path.parent != path:
            path = path.parent
        available = psutil.disk_usage(str(path)).free
        return available >= required_bytes, available
    except Exception as e:
        logger.debug(f"磁盘空间检查不可用，跳过: {e}")
        return True, math.inf
