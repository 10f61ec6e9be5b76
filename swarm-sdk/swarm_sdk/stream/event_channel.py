"""
Swarm SDK - 结果事件通道
"""

import asyncio
import logging
from typing import List, Optional

from shared.models import TaskEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """事件订阅（异步迭代器）

    每个订阅者有自己的无界缓冲区；通道关闭后迭代结束。

    Usage:
        async for event in orchestrator.subscribe_results():
            print(event.task_id, event.status)
    """

    def __init__(self, channel: "EventChannel"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> TaskEvent:
        if self._finished:
            raise StopAsyncIteration

        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    @property
    def pending(self) -> int:
        """已缓冲但未读取的事件数"""
        return self._queue.qsize()

    async def next(self, timeout: Optional[float] = None) -> TaskEvent:
        """读取下一个事件

        Raises:
            StopAsyncIteration: 通道已关闭
            asyncio.TimeoutError: 超时
        """
        return await asyncio.wait_for(self.__anext__(), timeout)

    def _deliver(self, event: TaskEvent):
        self._queue.put_nowait(event)

    def _finish(self):
        self._queue.put_nowait(_CLOSED)

    def close(self):
        """取消订阅"""
        self._channel.unsubscribe(self)


class EventChannel:
    """广播事件通道

    负责：
    - 多订阅者广播（每个订阅者独立缓冲）
    - 按发布顺序投递
    - 关闭时结束所有订阅
    """

    def __init__(self):
        self._subscribers: List[Subscription] = []
        self._closed = False
        self.published_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """新建订阅；只接收订阅之后发布的事件"""
        subscription = Subscription(self)
        if self._closed:
            subscription._finish()
        else:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            subscription._finish()

    def publish(self, event: TaskEvent):
        """发布事件（不阻塞）"""
        if self._closed:
            logger.warning(f"Dropping event for task {event.task_id}: channel closed")
            return

        for subscription in self._subscribers:
            subscription._deliver(event)

        self.published_count += 1
        logger.debug(f"Published event {event.status.value} for task {event.task_id}")

    def close(self):
        """关闭通道，结束所有订阅"""
        if self._closed:
            return

        self._closed = True
        for subscription in self._subscribers:
            subscription._finish()
        self._subscribers.clear()
        logger.info("Event channel closed")
