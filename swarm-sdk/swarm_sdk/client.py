"""
Swarm SDK - 客户端入口
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from shared.models import AgentInfo, Task, TaskEvent, TaskPriority

from .config import SwarmConfig
from .dispatcher.task_dispatcher import TaskDispatcher
from .errors import raise_for_event
from .pool.agent_registry import AgentRegistry
from .stream.event_channel import EventChannel, Subscription
from .stream.result_log import ResultLogWriter
from .worker_base import BaseAgent, ExecutionContext, FunctionAgent

logger = logging.getLogger(__name__)


class Orchestrator:
    """Swarm SDK 主入口

    注册 Agent、提交任务、订阅结果。所有方法都应在同一个事件循环中调用；
    submit_task / cancel_task 是普通（非 async）调用，不会阻塞。

    Usage:
        async with Orchestrator(config) as orchestrator:
            orchestrator.register_agent("echo", lambda payload, ctx: payload)
            results = orchestrator.subscribe_results()

            task_id = orchestrator.submit_task("hello", {"text": "hi"})
            event = await orchestrator.wait_for_task(task_id)
    """

    def __init__(self, config: Optional[SwarmConfig] = None):
        self.config = config or SwarmConfig()

        # 核心组件
        self.registry = AgentRegistry(self.config.registry)
        self.event_channel = EventChannel()
        self.dispatcher = TaskDispatcher(
            registry=self.registry,
            channel=self.event_channel,
            config=self.config.dispatcher
        )

        self._started = False
        self._closed = False
        self._background: Set[asyncio.Task] = set()

    async def start(self):
        """开始调度；启动前提交的任务在此时按优先级派发"""
        if self._started:
            return

        self.dispatcher.start()
        self._started = True
        logger.info(f"Orchestrator {self.config.service_name} started")

    async def shutdown(self, drain: bool = True, timeout_s: Optional[float] = None):
        """关闭编排器

        Args:
            drain: True 时等待排队和在途任务结束；False 时取消所有未完成任务
            timeout_s: drain 的最长等待时间
        """
        if self._closed:
            return

        await self.dispatcher.shutdown(drain=drain, timeout_s=timeout_s)

        for agent in self.registry.get_agents():
            await self._teardown(agent)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        self.event_channel.close()
        self._closed = True
        self._started = False
        logger.info(f"Orchestrator {self.config.service_name} stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown(drain=exc_type is None)

    @property
    def closed(self) -> bool:
        return self._closed

    # ==================== Agent 管理 ====================

    def register_agent(
        self,
        name: str,
        handler: Callable[[Any, ExecutionContext], Any],
        capabilities: Optional[Iterable[str]] = None,
        agent_id: Optional[str] = None
    ) -> str:
        """用处理函数注册 Agent

        Args:
            name: Agent 名称（注册表内唯一）
            handler: handler(payload, context)，同步或异步均可
            capabilities: Agent 能力标签

        Returns:
            Agent ID
        """
        agent = FunctionAgent(
            name=name,
            handler=handler,
            agent_id=agent_id,
            capabilities=capabilities
        )
        return self.add_agent(agent)

    def add_agent(self, agent: BaseAgent) -> str:
        """注册已构造好的 Agent"""
        self.registry.register(agent)
        self.dispatcher.agent_added()
        return agent.agent_id

    def unregister_agent(self, agent_id: str, force: bool = False):
        """注销 Agent

        Raises:
            AgentNotFoundError: Agent 不存在
            AgentBusyError: Agent 正在执行任务且未指定 force
        """
        agent = self.dispatcher.remove_agent(agent_id, force=force)
        self._spawn(self._teardown(agent))

    def mark_agent_unavailable(self, agent_id: str):
        self.dispatcher.set_agent_available(agent_id, False)

    def mark_agent_available(self, agent_id: str):
        self.dispatcher.set_agent_available(agent_id, True)

    def get_agents(self) -> List[AgentInfo]:
        """获取 Agent 信息列表"""
        return [agent.info() for agent in self.registry.get_agents()]

    # ==================== 任务接口 ====================

    def submit_task(
        self,
        name: str,
        payload: Any = None,
        priority: Optional[int] = None,
        timeout_s: Optional[float] = None,
        required_capabilities: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """提交任务（不阻塞）

        Args:
            name: 任务名称
            payload: 交给 Agent 的数据
            priority: 优先级，数值越大越先调度；默认 NORMAL
            timeout_s: 超时时间（秒），默认使用配置
            required_capabilities: 需要的 Agent 能力
            metadata: 扩展元数据

        Returns:
            任务 ID

        Raises:
            QueueFullError: 队列已满
            OrchestratorClosedError: 编排器正在关闭
        """
        task = Task(
            name=name,
            payload=payload,
            priority=int(priority if priority is not None else TaskPriority.NORMAL),
            timeout_s=timeout_s,
            required_capabilities=frozenset(required_capabilities or ()),
            metadata=metadata or {},
        )
        self.dispatcher.assign_task(task)
        return task.task_id

    def cancel_task(self, task_id: str):
        """取消任务

        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTransitionError: 任务已处于终态
        """
        self.dispatcher.cancel_task(task_id)

    def get_task(self, task_id: str) -> Task:
        return self.dispatcher.get_task(task_id)

    async def wait_for_task(self, task_id: str, timeout_s: Optional[float] = None) -> TaskEvent:
        """等待任务的终态事件"""
        return await self.dispatcher.wait_for_task(task_id, timeout_s)

    async def get_output(self, task_id: str, timeout_s: Optional[float] = None) -> Any:
        """等待任务并返回输出

        Raises:
            HandlerError: 处理函数失败
            TaskTimeoutError: 任务超时
            TaskCancelledError: 任务被取消
        """
        event = await self.wait_for_task(task_id, timeout_s)
        return raise_for_event(event)

    async def wait_all(
        self,
        task_ids: Sequence[str],
        timeout_s: Optional[float] = None
    ) -> List[TaskEvent]:
        """等待多个任务，按传入顺序返回终态事件"""
        return await asyncio.wait_for(
            asyncio.gather(*(self.dispatcher.wait_for_task(t) for t in task_ids)),
            timeout_s
        )

    def acknowledge_task(self, task_id: str) -> TaskEvent:
        """确认终态，释放任务记录"""
        return self.dispatcher.acknowledge_task(task_id)

    def subscribe_results(self) -> Subscription:
        """订阅结果事件（按完成顺序，关闭时结束）"""
        return self.event_channel.subscribe()

    # ==================== 统计 ====================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "service_name": self.config.service_name,
            "tasks": self.dispatcher.get_stats(),
            "agents": self.registry.get_stats(),
            "subscribers": self.event_channel.subscriber_count,
        }

    # ==================== 辅助方法 ====================

    async def _teardown(self, agent: BaseAgent):
        try:
            await agent.teardown()
        except Exception as e:
            logger.error(f"Teardown failed for agent {agent.agent_id}: {e}")

    def _spawn(self, coro):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, skipping agent teardown")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)


async def run_swarm(
    handler: Callable[[Any, ExecutionContext], Any],
    n: int,
    payloads: Optional[Sequence[Any]] = None,
    concurrency: Optional[int] = None,
    output_file: Optional[Union[str, Path]] = None,
    config: Optional[SwarmConfig] = None,
    name: str = "swarm"
) -> List[TaskEvent]:
    """并发运行同一个处理函数 n 次

    Args:
        handler: handler(payload, context)
        n: 运行次数
        payloads: 每次运行的 payload（长度必须为 n），默认都是 None
        concurrency: Agent 数量，默认 n
        output_file: 结果 JSON Lines 文件（可选）
        config: 编排器配置
        name: 任务 / Agent 名称前缀

    Returns:
        终态事件列表（按完成顺序）
    """
    if n < 1:
        raise ValueError("n must be >= 1")
    if payloads is not None and len(payloads) != n:
        raise ValueError(f"expected {n} payloads, got {len(payloads)}")

    agents = concurrency or n
    results: List[TaskEvent] = []

    writer = None
    if output_file is not None:
        writer = ResultLogWriter(output_file)
        writer.reset()

    logger.info(f"Starting swarm {name}: {n} runs on {agents} agents")

    async with Orchestrator(config) as orchestrator:
        for i in range(agents):
            orchestrator.register_agent(f"{name}-agent-{i + 1}", handler)

        subscription = orchestrator.subscribe_results()
        for i in range(n):
            orchestrator.submit_task(
                f"{name}-{i + 1}",
                payloads[i] if payloads is not None else None
            )

        async for event in subscription:
            if not event.is_terminal:
                continue
            results.append(event)
            # 逐条落盘
            if writer is not None:
                writer.append(event)
            if len(results) == n:
                break
        subscription.close()

    if writer is not None:
        logger.info(f"Wrote {writer.written} results to {writer.path}")

    succeeded = sum(1 for e in results if e.ok)
    logger.info(f"Swarm {name} finished: {succeeded}/{n} succeeded")
    return results
