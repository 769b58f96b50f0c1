"""
服务进程工具函数
- 平台识别与动态库搜索路径注入
- 本地端口扫描
- 可执行文件查找（环境变量 / 打包布局 / 开发布局 / 系统PATH）
- 进程树终止
"""

import asyncio
import logging
import os
import platform
import shutil
import signal
import socket
import sys
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import psutil

from core.config import config
from core.errors import ProcessStartupError

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    MACOS = "darwin"
    LINUX = "linux"
    WINDOWS = "win32"


# 平台 -> 动态库搜索路径环境变量
LIBRARY_PATH_VARS: Dict[Platform, str] = {
    Platform.MACOS: "DYLD_LIBRARY_PATH",
    Platform.LINUX: "LD_LIBRARY_PATH",
    Platform.WINDOWS: "PATH",
}


def current_platform() -> Platform:
    if sys.platform == "win32":
        return Platform.WINDOWS
    if sys.platform == "darwin":
        return Platform.MACOS
    return Platform.LINUX


def platform_arch() -> str:
    """例如 linux-x64 / darwin-arm64 / win32-x64"""
    machine = platform.machine().lower()
    arch = {"x86_64": "x64", "amd64": "x64", "aarch64": "arm64"}.get(machine, machine)
    return f"{current_platform().value}-{arch}"


def build_process_env(binary_path: Path, base_env: Optional[Dict[str, str]] = None,
                      target: Optional[Platform] = None) -> Dict[str, str]:
    """复制环境变量，并把可执行文件所在目录加到动态库搜索路径最前面"""
    env = dict(os.environ if base_env is None else base_env)
    var = LIBRARY_PATH_VARS[target or current_platform()]
    bin_dir = str(Path(binary_path).parent)
    existing = env.get(var)
    env[var] = bin_dir + (os.pathsep + existing if existing else "")
    return env


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """尝试绑定后立即释放"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(port_range: Tuple[int, int], host: str = "127.0.0.1") -> int:
    start, end = port_range
    for port in range(start, end + 1):
        if is_port_available(port, host):
            return port
    raise ProcessStartupError(
        f"端口 {start}-{end} 均被占用",
        suggestion="关闭占用这些端口的程序后重试",
    )


def binary_names(base_name: str) -> List[str]:
    """平台专用名在前，通用名在后"""
    suffix = ".exe" if current_platform() == Platform.WINDOWS else ""
    return [f"{base_name}-{platform_arch()}{suffix}", f"{base_name}{suffix}"]


def _is_executable_file(path: Path) -> bool:
    try:
        return path.is_file() and os.access(path, os.X_OK)
    except OSError:
        return False


def binary_candidates(base_name: str, env_var: Optional[str] = None) -> List[Path]:
    """按优先级列出可执行文件候选路径（不含系统PATH）"""
    candidates: List[Path] = []

    override = os.getenv(env_var) if env_var else None
    if override:
        candidates.append(Path(override))

    bin_dirs: Iterable[Optional[Path]] = (config.PACKAGED_BIN_DIR, config.DEV_BIN_DIR)
    for bin_dir in bin_dirs:
        if bin_dir is None:
            continue
        for name in binary_names(base_name):
            candidates.append(bin_dir / name)
    return candidates


def resolve_binary_path(base_name: str, env_var: Optional[str] = None) -> Optional[Path]:
    """
    查找服务可执行文件

    Returns:
        Optional[Path]: 找到的路径；找不到时返回 None
    """
    for candidate in binary_candidates(base_name, env_var):
        if _is_executable_file(candidate):
            return candidate

    for name in binary_names(base_name):
        found = shutil.which(name)
        if found:
            return Path(found)

    return None


def kill_process_tree(pid: int):
    """强制结束进程及其子进程"""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    processes = parent.children(recursive=True) + [parent]
    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(processes, timeout=3)


async def graceful_stop_process(process: asyncio.subprocess.Process, timeout: float) -> Optional[int]:
    """
    先发送 SIGTERM（Windows 为 terminate），超时后强制结束整个进程树

    Returns:
        Optional[int]: 退出码
    """
    if process.returncode is not None:
        return process.returncode

    try:
        if current_platform() == Platform.WINDOWS:
            process.terminate()
        else:
            process.send_signal(signal.SIGTERM)
    except ProcessLookupError:
        return process.returncode

    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"进程 {process.pid} 未在 {timeout:g} 秒内退出，强制结束")

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, kill_process_tree, process.pid)
    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"无法结束进程: {process.pid}")
        return None
