"""
本地推理服务进程相关数据模型
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ServerState(str, Enum):
    """服务进程状态机: STOPPED -> STARTING -> READY <-> DEGRADED -> STOPPED"""
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"   # 进程仍在运行，但连续健康检查失败


@dataclass
class ServerStatus:
    """服务进程状态快照"""
    backend: str
    state: ServerState = ServerState.STOPPED
    available: bool = False             # 可执行文件是否存在
    running: bool = False               # 进程是否存活
    ready: bool = False                 # 是否可以接受请求
    port: Optional[int] = None
    model_path: Optional[str] = None
    model_name: Optional[str] = None
    pid: Optional[int] = None
    health_failures: int = 0
    last_error: Optional[str] = None
    binary_path: Optional[str] = None

    def to_dict(self) -> Dict:
        """转换为字典格式"""
        return {
            "backend": self.backend,
            "state": self.state.value,
            "available": self.available,
            "running": self.running,
            "ready": self.ready,
            "port": self.port,
            "model_path": self.model_path,
            "model_name": self.model_name,
            "pid": self.pid,
            "health_failures": self.health_failures,
            "last_error": self.last_error,
            "binary_path": self.binary_path,
        }
