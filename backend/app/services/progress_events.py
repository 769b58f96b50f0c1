"""
下载进度事件通道

核心特性：
1. 下载流程只负责发布事件，不关心谁在监听
2. 回调订阅者（同步函数）与队列订阅者（SSE 推送）统一管理
3. 记录每个模型的最新事件，新连接可以先拿到当前状态
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from models.model_models import DownloadProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DownloadProgressEvent], None]


class ProgressChannel:
    """进度事件通道（观察者模式）"""

    def __init__(self, queue_size: int = 1000):
        self._callbacks: List[ProgressCallback] = []
        self._queues: Set[asyncio.Queue] = set()
        self._latest: Dict[str, DownloadProgressEvent] = {}
        self._queue_size = queue_size

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """
        注册回调订阅者

        Returns:
            取消订阅的函数
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: ProgressCallback):
        """取消注册回调"""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def open_queue(self) -> asyncio.Queue:
        """创建一个队列订阅者（用于 SSE 流）"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue):
        self._queues.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def latest(self, model_id: Optional[str] = None):
        """获取最新事件（按模型或全部）"""
        if model_id is not None:
            return self._latest.get(model_id)
        return dict(self._latest)

    def publish(self, event: DownloadProgressEvent):
        """发布事件到所有订阅者，单个订阅者失败不影响其他订阅者"""
        self._latest[event.model_id] = event

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"进度回调失败: {e}")

        for queue in list(self._queues):
            if queue.full():
                # 慢消费者：丢弃最旧的一条，保证最新状态能送达
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)
