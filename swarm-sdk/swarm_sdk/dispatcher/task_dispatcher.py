"""
Swarm SDK - 任务调度器
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from shared.models import ErrorKind, Task, TaskEvent, TaskStatus

from ..config import DispatcherConfig
from ..errors import (
    AgentBusyError,
    InvalidTransitionError,
    OrchestratorClosedError,
    TaskCancelledError,
    TaskNotFoundError,
)
from ..pool.agent_registry import AgentRegistry
from ..stream.event_channel import EventChannel
from ..worker_base import BaseAgent, CancellationToken, ExecutionContext
from .state_machine import transition
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)


class InflightEntry:
    """一次任务执行的调度记录"""

    def __init__(self, task: Task, agent_id: str, token: CancellationToken, started_at: float):
        self.task = task
        self.agent_id = agent_id
        self.token = token
        self.started_at = started_at

        self.exec_task: Optional[asyncio.Task] = None
        self.timeout_handle: Optional[asyncio.TimerHandle] = None
        self.grace_handle: Optional[asyncio.TimerHandle] = None

        # Agent 槽位是否已释放
        self.released = False


class TaskDispatcher:
    """任务调度器

    负责：
    - 按优先级维护待调度队列
    - 把任务匹配给空闲 Agent 并启动执行
    - 超时、取消和宽限期处理
    - 发布终态事件并唤醒等待者

    所有簿记都在事件循环线程中同步完成（单写者），
    处理函数作为独立的 asyncio Task 或线程并发运行。
    """

    def __init__(
        self,
        registry: AgentRegistry,
        channel: EventChannel,
        config: Optional[DispatcherConfig] = None
    ):
        self.registry = registry
        self.channel = channel
        self.config = config or DispatcherConfig()

        self.queue = TaskQueue(self.config.max_queue_depth)

        # 任务表（直到调用方确认终态）: {task_id: Task}
        self._tasks: Dict[str, Task] = {}
        self._results: Dict[str, TaskEvent] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}

        # 在途任务: {task_id: InflightEntry}
        self._inflight: Dict[str, InflightEntry] = {}

        # 占用中的 Agent（含超时后尚未确认的执行）: {agent_id: InflightEntry}
        self._holding: Dict[str, InflightEntry] = {}

        # 尚未结束的执行协程（含已放弃的）
        self._exec_tasks: Set[asyncio.Task] = set()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._settled: Optional[asyncio.Event] = None
        self._running = False
        self._accepting = True
        self._dispatch_seq = itertools.count()

        self._counters = {
            "submitted": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "timeouts": 0,
        }

    # ==================== 生命周期 ====================

    @property
    def running(self) -> bool:
        return self._running

    @property
    def accepting(self) -> bool:
        return self._accepting

    def start(self):
        """开始调度（必须在事件循环中调用）"""
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._settled = asyncio.Event()
        self._running = True
        logger.info(f"Dispatcher started with {len(self.queue)} queued tasks")

        self._update_settled()
        self._kick()

    async def shutdown(self, drain: bool = True, timeout_s: Optional[float] = None):
        """停止调度

        Args:
            drain: True 时等待队列和在途任务全部结束；False 时立即取消
            timeout_s: drain 的最长等待时间，超时后取消剩余任务

        drain 期间，没有任何空闲 Agent 能执行的排队任务（缺少能力或
        Agent 全部不可用）不会被等待，在途任务结束后直接取消。
        """
        if not self._running:
            self.start()

        self._accepting = False
        logger.info(f"Dispatcher shutting down (drain={drain})")

        if drain:
            self._update_settled()
            try:
                await asyncio.wait_for(self._wait_drained(), timeout_s)
            except asyncio.TimeoutError:
                logger.warning(f"Drain did not finish within {timeout_s}s, cancelling outstanding tasks")
                self._cancel_outstanding("orchestrator shutdown (drain timeout)")
            else:
                self._cancel_stranded()
        else:
            self._cancel_outstanding("orchestrator shutdown")

        pending = [t for t in self._exec_tasks if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=self.config.cancel_grace_period_s)

        self._running = False
        logger.info("Dispatcher stopped")

    # ==================== 提交与取消 ====================

    def assign_task(self, task: Task):
        """任务入队（不阻塞）

        Raises:
            OrchestratorClosedError: 已停止接收任务
            QueueFullError: 队列已满
        """
        if not self._accepting:
            raise OrchestratorClosedError(f"Orchestrator is shutting down, rejected {task.task_id}")

        self.queue.push(task)
        self._tasks[task.task_id] = task
        self._counters["submitted"] += 1

        logger.info(f"Queued task {task.task_id} ({task.name}, priority={task.priority})")
        self._emit_lifecycle(task)
        self._update_settled()
        self._kick()

    def cancel_task(self, task_id: str):
        """取消任务（不阻塞）

        排队中的任务立即取消；在途任务发出协作式取消信号，
        在 Agent 确认或宽限期结束时变为 Cancelled。
        """
        task = self.get_task(task_id)

        if task.status == TaskStatus.QUEUED:
            self.queue.remove(task_id)
            self._settle(task, None, TaskStatus.CANCELLED, error="cancelled before dispatch")
            logger.info(f"Cancelled queued task {task_id}")
            return

        if task.status in (TaskStatus.ASSIGNED, TaskStatus.RUNNING):
            entry = self._inflight[task_id]
            if entry.token.cancelled:
                return
            entry.token.cancel("cancelled by caller")
            logger.info(f"Cancellation requested for task {task_id} on agent {entry.agent_id}")
            self._start_grace(entry)
            return

        raise InvalidTransitionError(
            f"Task {task_id} is already {task.status.value}, cannot cancel"
        )

    # ==================== Agent 管理 ====================

    def remove_agent(self, agent_id: str, force: bool = False) -> BaseAgent:
        """注销 Agent

        Raises:
            AgentNotFoundError: Agent 不存在
            AgentBusyError: Agent 持有任务且未指定 force
        """
        agent = self.registry.get(agent_id)
        entry = self._holding.get(agent_id)

        if entry is not None:
            if not force:
                raise AgentBusyError(
                    f"Agent {agent_id} is busy with task {entry.task.task_id}"
                )

            entry.token.cancel("agent unregistered")
            if not entry.task.is_terminal:
                self._settle(
                    entry.task, entry, TaskStatus.CANCELLED,
                    error="agent unregistered while task in flight"
                )
            self._release(entry)
            self._abandon_later(entry)
            logger.warning(
                f"Force-unregistered agent {agent_id}, task {entry.task.task_id} "
                f"is {entry.task.status.value}"
            )

        return self.registry.unregister(agent_id)

    def set_agent_available(self, agent_id: str, available: bool):
        self.registry.set_available(agent_id, available)
        if available:
            self._kick()

    def agent_added(self):
        """新 Agent 注册后触发一次调度"""
        self._kick()

    # ==================== 查询 ====================

    def get_task(self, task_id: str) -> Task:
        if task_id not in self._tasks:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return self._tasks[task_id]

    def get_result(self, task_id: str) -> Optional[TaskEvent]:
        self.get_task(task_id)
        return self._results.get(task_id)

    @property
    def inflight(self) -> Dict[str, Tuple[str, float]]:
        """在途任务: {task_id: (agent_id, start_time)}"""
        return {
            task_id: (entry.agent_id, entry.started_at)
            for task_id, entry in self._inflight.items()
        }

    async def wait_for_task(self, task_id: str, timeout_s: Optional[float] = None) -> TaskEvent:
        """等待任务终态事件"""
        self.get_task(task_id)
        if task_id in self._results:
            return self._results[task_id]

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(task_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout_s)
        finally:
            waiters = self._waiters.get(task_id)
            if waiters and future in waiters:
                waiters.remove(future)

    def acknowledge_task(self, task_id: str) -> TaskEvent:
        """确认终态并归档（从任务表移除）"""
        task = self.get_task(task_id)
        if not task.is_terminal:
            raise InvalidTransitionError(
                f"Task {task_id} is {task.status.value}, only terminal tasks can be acknowledged"
            )

        del self._tasks[task_id]
        return self._results.pop(task_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queued": len(self.queue),
            "inflight": len(self._inflight),
            "tracked_tasks": len(self._tasks),
            **self._counters,
        }

    # ==================== 调度步骤 ====================

    def dispatch(self) -> int:
        """执行一次调度：反复取出可以运行的最高优先级任务

        Returns:
            本次启动的任务数
        """
        if not self._running:
            return 0

        started = 0
        while True:
            pair = self._next_pair()
            if pair is None:
                break

            task, agent = pair
            self.queue.remove(task.task_id)
            self._start(task, agent)
            started += 1

        return started

    def _kick(self):
        try:
            self.dispatch()
        except Exception:
            logger.exception("Dispatch step failed")
        self._update_settled()

    def _next_pair(self) -> Optional[Tuple[Task, BaseAgent]]:
        if not self.registry.has_idle():
            return None

        for task in list(self.queue):
            try:
                agent = self.registry.select_idle(task)
            except Exception as e:
                self._reject_selection(task, e)
                continue
            if agent is not None:
                return task, agent
        return None

    def _reject_selection(self, task: Task, error: Exception):
        """选择函数失败：只终止这一个任务，其余任务继续调度"""
        logger.error(f"Agent selection failed for task {task.task_id}: {error!r}")
        self.queue.remove(task.task_id)
        self._settle(
            task, None, TaskStatus.CANCELLED,
            error=f"agent selection failed: {type(error).__name__}: {error}",
            error_code=ErrorKind.SELECTION_ERROR,
        )

    def _start(self, task: Task, agent: BaseAgent):
        transition(task, TaskStatus.ASSIGNED)
        agent.acquire(task.task_id)
        agent.last_dispatch_seq = next(self._dispatch_seq)

        entry = InflightEntry(task, agent.agent_id, CancellationToken(), self._loop.time())
        self._inflight[task.task_id] = entry
        self._holding[agent.agent_id] = entry

        logger.info(f"Dispatched task {task.task_id} to agent {agent.agent_id}")
        self._emit_lifecycle(task, agent_id=agent.agent_id)

        entry.exec_task = self._loop.create_task(
            self._run(entry, agent), name=f"swarm-task-{task.task_id}"
        )
        self._exec_tasks.add(entry.exec_task)
        entry.exec_task.add_done_callback(self._exec_tasks.discard)

    async def _run(self, entry: InflightEntry, agent: BaseAgent):
        """在独立的 asyncio Task 中执行处理函数"""
        task = entry.task

        if entry.token.cancelled or task.is_terminal:
            self._on_done(entry, cancelled=True)
            return

        transition(task, TaskStatus.RUNNING)
        self._emit_lifecycle(task, agent_id=agent.agent_id)

        timeout_s = task.timeout_s if task.timeout_s is not None else self.config.default_timeout_s
        if timeout_s is not None:
            entry.timeout_handle = self._loop.call_later(timeout_s, self._on_timeout, entry, timeout_s)

        context = ExecutionContext(
            task_id=task.task_id,
            task_name=task.name,
            agent_id=agent.agent_id,
            token=entry.token,
            metadata=task.metadata,
        )

        try:
            output = await agent.execute(task, context)
        except TaskCancelledError:
            self._on_done(entry, cancelled=True)
        except asyncio.CancelledError:
            self._on_done(entry, cancelled=True)
            raise
        except GeneratorExit:
            raise
        except BaseException as e:
            # SystemExit / KeyboardInterrupt 等也只让这个任务失败
            self._on_done(entry, error=e)
        else:
            self._on_done(entry, output=output)

    # ==================== 完成处理 ====================

    def _on_done(
        self,
        entry: InflightEntry,
        output: Any = None,
        error: Optional[BaseException] = None,
        cancelled: bool = False
    ):
        self._cancel_timer(entry, "timeout_handle")
        task = entry.task
        duration = self._loop.time() - entry.started_at

        if task.is_terminal:
            if not cancelled:
                logger.warning(
                    f"Discarding late result for task {task.task_id} "
                    f"({task.status.value}) from agent {entry.agent_id}"
                )
        elif cancelled or entry.token.cancelled:
            self._settle(
                task, entry, TaskStatus.CANCELLED,
                error=f"cancelled: {entry.token.reason or 'acknowledged by handler'}",
                duration=duration,
            )
        elif error is not None:
            logger.error(f"Task {task.task_id} failed on agent {entry.agent_id}: {error!r}")
            self._count_agent_failure(entry.agent_id)
            self._settle(
                task, entry, TaskStatus.FAILED,
                error=f"{type(error).__name__}: {error}",
                error_code=ErrorKind.HANDLER_ERROR,
                duration=duration,
            )
        else:
            logger.info(f"Task {task.task_id} completed on agent {entry.agent_id} in {duration:.3f}s")
            self._settle(task, entry, TaskStatus.COMPLETED, output=output, duration=duration)

        self._release(entry)
        self._kick()

    def _on_timeout(self, entry: InflightEntry, timeout_s: float):
        entry.timeout_handle = None
        task = entry.task
        if task.is_terminal or entry.released:
            return

        logger.warning(f"Task {task.task_id} timed out after {timeout_s}s on agent {entry.agent_id}")
        entry.token.cancel("timeout")
        self._counters["timeouts"] += 1
        self._count_agent_failure(entry.agent_id)
        self._settle(
            task, entry, TaskStatus.FAILED,
            error=f"Task timed out after {timeout_s}s",
            error_code=ErrorKind.TIMEOUT,
            duration=self._loop.time() - entry.started_at,
        )
        self._start_grace(entry)

    def _start_grace(self, entry: InflightEntry):
        if entry.grace_handle is None and not entry.released:
            entry.grace_handle = self._loop.call_later(
                self.config.cancel_grace_period_s, self._on_grace_expired, entry
            )

    def _on_grace_expired(self, entry: InflightEntry):
        entry.grace_handle = None
        if entry.released:
            return

        task = entry.task
        logger.warning(
            f"Agent {entry.agent_id} did not stop task {task.task_id} within "
            f"{self.config.cancel_grace_period_s}s, freeing slot"
        )
        if not task.is_terminal:
            self._settle(
                task, entry, TaskStatus.CANCELLED,
                error="cancellation not acknowledged within grace period",
                duration=self._loop.time() - entry.started_at,
            )

        self._release(entry)
        if entry.exec_task is not None and not entry.exec_task.done():
            entry.exec_task.cancel()
        self._kick()

    def _abandon_later(self, entry: InflightEntry):
        """宽限期后对仍在运行的协程发出 asyncio 取消（线程中的处理函数无法抢占）"""
        exec_task = entry.exec_task
        if exec_task is None or exec_task.done() or self._loop is None:
            return
        self._loop.call_later(
            self.config.cancel_grace_period_s,
            lambda: exec_task.cancel() if not exec_task.done() else None
        )

    def _settle(
        self,
        task: Task,
        entry: Optional[InflightEntry],
        status: TaskStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_code: Optional[ErrorKind] = None,
        duration: Optional[float] = None
    ):
        """推进到终态并发布唯一的终态事件"""
        transition(task, status)
        self._inflight.pop(task.task_id, None)

        if status == TaskStatus.CANCELLED:
            error_code = error_code or ErrorKind.CANCELLED
        self._counters[status.value] += 1

        event = TaskEvent(
            task_id=task.task_id,
            task_name=task.name,
            status=status,
            output=output,
            error=error,
            error_code=error_code,
            agent_id=entry.agent_id if entry else None,
            duration_s=duration,
        )
        self._results[task.task_id] = event
        self.channel.publish(event)

        for future in self._waiters.pop(task.task_id, []):
            if not future.done():
                future.set_result(event)

        self._update_settled()

    def _release(self, entry: InflightEntry):
        if entry.released:
            return

        entry.released = True
        self._cancel_timer(entry, "grace_handle")
        self._cancel_timer(entry, "timeout_handle")

        if self._holding.get(entry.agent_id) is entry:
            del self._holding[entry.agent_id]

        agent = self.registry.find(entry.agent_id)
        if agent is not None:
            agent.release(entry.task.task_id)
            logger.debug(f"Agent {entry.agent_id} released ({agent.state.value})")

        self._update_settled()

    def _cancel_outstanding(self, reason: str):
        for task in self.queue.pop_all():
            self._settle(task, None, TaskStatus.CANCELLED, error=reason)

        for entry in list(self._inflight.values()):
            entry.token.cancel(reason)
            self._settle(entry.task, entry, TaskStatus.CANCELLED, error=reason)

        for entry in list(self._holding.values()):
            entry.token.cancel(reason)
            self._release(entry)
            if entry.exec_task is not None and not entry.exec_task.done():
                entry.exec_task.cancel()

    def _cancel_stranded(self):
        for task in self.queue.pop_all():
            logger.warning(f"No eligible agent for queued task {task.task_id}, cancelling on shutdown")
            self._settle(task, None, TaskStatus.CANCELLED, error="no eligible agent available during drain")

    # ==================== 辅助方法 ====================

    def _count_agent_failure(self, agent_id: str):
        agent = self.registry.find(agent_id)
        if agent is not None:
            agent.failed_tasks += 1

    @staticmethod
    def _cancel_timer(entry: InflightEntry, attr: str):
        handle = getattr(entry, attr)
        if handle is not None:
            handle.cancel()
            setattr(entry, attr, None)

    def _emit_lifecycle(self, task: Task, agent_id: Optional[str] = None):
        if not self.config.emit_lifecycle_events:
            return
        self.channel.publish(TaskEvent(
            task_id=task.task_id,
            task_name=task.name,
            status=task.status,
            agent_id=agent_id,
        ))

    def _drained(self) -> bool:
        if self._inflight or self._holding:
            return False
        if self._accepting:
            return not self.queue
        # 关闭中：没有空闲 Agent 能执行的排队任务不再等待
        return not any(self.registry.idle_candidates(t) for t in self.queue)

    def _update_settled(self):
        if self._settled is None:
            return
        if self._drained():
            self._settled.set()
        else:
            self._settled.clear()

    async def _wait_drained(self):
        # 事件可能在唤醒前被重新清除，醒来后再确认一次
        while True:
            await self._settled.wait()
            if self._drained():
                return
            self._settled.clear()
