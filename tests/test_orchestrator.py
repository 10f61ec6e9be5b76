"""
编排器集成测试

在真实事件循环中测试调度、超时、取消、失败隔离和关闭流程（无需外部服务）。
运行方式: pytest tests/test_orchestrator.py -v
"""

import asyncio
import json
import threading
import time
import pytest
from collections import Counter
import sys
import os

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
sys.path.insert(0, os.path.join(ROOT, "swarm-sdk"))

from swarm_sdk import (
    Orchestrator,
    SwarmConfig,
    DispatcherConfig,
    AgentRegistryConfig,
    SelectionPolicy,
    BaseAgent,
    FunctionAgent,
    run_swarm,
    AgentBusyError,
    AgentNotFoundError,
    AgentSelectionError,
    DuplicateAgentError,
    HandlerError,
    InvalidTransitionError,
    OrchestratorClosedError,
    QueueFullError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from shared.models import AgentStatus, ErrorKind, TaskStatus


def make_config(**dispatcher):
    dispatcher.setdefault("cancel_grace_period_s", 0.2)
    return SwarmConfig(dispatcher=DispatcherConfig(**dispatcher))


async def echo(payload, context):
    await asyncio.sleep(0)
    return payload


async def until_cancelled(payload, context):
    """协作式处理函数：一直运行直到收到取消信号"""
    while not context.cancelled:
        await asyncio.sleep(0.005)
    context.raise_if_cancelled()


async def collect(subscription, count, timeout=2.0):
    events = []
    while len(events) < count:
        events.append(await subscription.next(timeout=timeout))
    return events


class TestDispatchOrder:
    """调度顺序测试"""

    @pytest.mark.asyncio
    async def test_higher_priority_dispatched_first(self):
        """测试启动前提交的任务按优先级派发"""
        orchestrator = Orchestrator(make_config())
        order = []

        async def record(payload, context):
            order.append(context.task_name)
            return payload

        orchestrator.register_agent("worker", record)
        t1 = orchestrator.submit_task("T1", priority=1)
        t2 = orchestrator.submit_task("T2", priority=5)

        await orchestrator.start()
        await orchestrator.wait_all([t1, t2], timeout_s=2)
        await orchestrator.shutdown()

        assert order == ["T2", "T1"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self):
        """测试同优先级按提交顺序"""
        orchestrator = Orchestrator(make_config())
        order = []

        async def record(payload, context):
            order.append(payload)

        orchestrator.register_agent("worker", record)
        ids = [orchestrator.submit_task(f"t{i}", i) for i in range(5)]

        async with orchestrator:
            await orchestrator.wait_all(ids, timeout_s=2)

        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_single_agent_runs_sequentially(self):
        """测试单个 Agent 一次只执行一个任务"""
        active = 0
        peak = 0

        async def handler(payload, context):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return payload

        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("solo", handler)
            ids = [orchestrator.submit_task(f"t{i}", i) for i in range(3)]
            events = await orchestrator.wait_all(ids, timeout_s=2)

        assert peak == 1
        assert [e.status for e in events] == [TaskStatus.COMPLETED] * 3

    @pytest.mark.asyncio
    async def test_agent_mutual_exclusion(self):
        """测试同一 Agent 不会同时执行两个任务"""
        running = {}
        overlaps = []

        async def handler(payload, context):
            if running.get(context.agent_id):
                overlaps.append(context.agent_id)
            running[context.agent_id] = True
            await asyncio.sleep(0.005)
            running[context.agent_id] = False
            return context.agent_id

        async with Orchestrator(make_config()) as orchestrator:
            a = orchestrator.register_agent("a", handler)
            b = orchestrator.register_agent("b", handler)
            ids = [orchestrator.submit_task(f"t{i}") for i in range(8)]
            events = await orchestrator.wait_all(ids, timeout_s=2)

        assert overlaps == []
        assert {e.agent_id for e in events} == {a, b}
        assert all(e.output == e.agent_id for e in events)

    @pytest.mark.asyncio
    async def test_round_robin_across_agents(self):
        """测试轮询分配"""
        async with Orchestrator(make_config()) as orchestrator:
            agents = [orchestrator.register_agent(f"a{i}", echo) for i in range(3)]
            used = []
            for i in range(4):
                event = await orchestrator.wait_for_task(orchestrator.submit_task(f"t{i}"), timeout_s=2)
                used.append(event.agent_id)

        assert used == [agents[0], agents[1], agents[2], agents[0]]

    @pytest.mark.asyncio
    async def test_capabilities_no_head_of_line_blocking(self):
        """测试无法匹配的任务不阻塞后续任务"""
        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("cpu", echo, capabilities=["cpu"])
            gpu = orchestrator.register_agent("gpu", echo, capabilities=["gpu"])

            stuck = orchestrator.submit_task("tpu", priority=10, required_capabilities=["tpu"])
            runnable = orchestrator.submit_task("gpu", priority=1, required_capabilities=["gpu"])

            event = await orchestrator.wait_for_task(runnable, timeout_s=2)
            assert event.agent_id == gpu
            assert orchestrator.get_task(stuck).status == TaskStatus.QUEUED

            orchestrator.cancel_task(stuck)

    @pytest.mark.asyncio
    async def test_unavailable_agent_skipped(self):
        """测试不可用 Agent 不接收任务，恢复后继续调度"""
        async with Orchestrator(make_config()) as orchestrator:
            agent_id = orchestrator.register_agent("a", echo)
            orchestrator.mark_agent_unavailable(agent_id)

            task_id = orchestrator.submit_task("t", "x")
            await asyncio.sleep(0.05)
            assert orchestrator.get_task(task_id).status == TaskStatus.QUEUED
            assert orchestrator.get_agents()[0].status == AgentStatus.UNAVAILABLE

            orchestrator.mark_agent_available(agent_id)
            event = await orchestrator.wait_for_task(task_id, timeout_s=2)

        assert event.output == "x"

    @pytest.mark.asyncio
    async def test_sync_handler_runs_in_thread(self):
        """测试同步处理函数在线程中运行"""
        main_thread = threading.get_ident()

        def blocking(payload, context):
            time.sleep(0.01)
            return threading.get_ident()

        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("sync", blocking)
            output = await orchestrator.get_output(orchestrator.submit_task("t"), timeout_s=2)

        assert output != main_thread


class TestSubmission:
    """任务提交测试"""

    @pytest.mark.asyncio
    async def test_queue_full(self):
        """测试队列已满时拒绝提交"""
        orchestrator = Orchestrator(make_config(max_queue_depth=1))
        await orchestrator.start()

        orchestrator.submit_task("first")
        with pytest.raises(QueueFullError):
            orchestrator.submit_task("second")

        assert orchestrator.get_stats()["tasks"]["queued"] == 1
        await orchestrator.shutdown(drain=False)

    @pytest.mark.asyncio
    async def test_submit_after_shutdown_rejected(self):
        """测试关闭后拒绝提交"""
        orchestrator = Orchestrator(make_config())
        await orchestrator.start()
        await orchestrator.shutdown()

        assert orchestrator.closed
        with pytest.raises(OrchestratorClosedError):
            orchestrator.submit_task("late")

    @pytest.mark.asyncio
    async def test_duplicate_agent_name(self):
        """测试重复的 Agent 名称"""
        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("a", echo)
            with pytest.raises(DuplicateAgentError):
                orchestrator.register_agent("a", echo)

    @pytest.mark.asyncio
    async def test_unknown_task(self):
        """测试未知任务"""
        async with Orchestrator(make_config()) as orchestrator:
            with pytest.raises(TaskNotFoundError):
                orchestrator.cancel_task("task_missing")
            with pytest.raises(TaskNotFoundError):
                orchestrator.get_task("task_missing")

    @pytest.mark.asyncio
    async def test_wait_for_task_timeout(self):
        """测试等待超时"""
        async with Orchestrator(make_config()) as orchestrator:
            task_id = orchestrator.submit_task("nobody")
            with pytest.raises(asyncio.TimeoutError):
                await orchestrator.wait_for_task(task_id, timeout_s=0.05)
            orchestrator.cancel_task(task_id)

    @pytest.mark.asyncio
    async def test_acknowledge(self):
        """测试确认终态后释放任务记录"""
        async with Orchestrator(make_config()) as orchestrator:
            task_id = orchestrator.submit_task("nobody")
            with pytest.raises(InvalidTransitionError):
                orchestrator.acknowledge_task(task_id)

            orchestrator.register_agent("a", echo)
            await orchestrator.wait_for_task(task_id, timeout_s=2)

            event = orchestrator.acknowledge_task(task_id)
            assert event.status == TaskStatus.COMPLETED
            with pytest.raises(TaskNotFoundError):
                orchestrator.get_task(task_id)


class TestCancellation:
    """取消测试"""

    @pytest.mark.asyncio
    async def test_cancel_queued_task(self):
        """测试取消排队中的任务"""
        async with Orchestrator(make_config()) as orchestrator:
            results = orchestrator.subscribe_results()
            task_id = orchestrator.submit_task("waiting")

            orchestrator.cancel_task(task_id)

            event = await results.next(timeout=1)
            assert event.task_id == task_id
            assert event.status == TaskStatus.CANCELLED
            assert event.error_code == ErrorKind.CANCELLED
            assert event.agent_id is None
            assert orchestrator.get_task(task_id).status == TaskStatus.CANCELLED

            with pytest.raises(InvalidTransitionError):
                orchestrator.cancel_task(task_id)

    @pytest.mark.asyncio
    async def test_cancel_running_task_acknowledged(self):
        """测试处理函数确认取消后 Agent 立即空闲"""
        started = asyncio.Event()

        async def handler(payload, context):
            started.set()
            await until_cancelled(payload, context)

        async with Orchestrator(make_config(cancel_grace_period_s=5)) as orchestrator:
            agent_id = orchestrator.register_agent("a", handler)
            task_id = orchestrator.submit_task("long")
            await asyncio.wait_for(started.wait(), 1)

            orchestrator.cancel_task(task_id)
            orchestrator.cancel_task(task_id)

            event = await orchestrator.wait_for_task(task_id, timeout_s=1)
            assert event.status == TaskStatus.CANCELLED
            assert event.agent_id == agent_id
            assert orchestrator.get_agents()[0].status == AgentStatus.IDLE

    @pytest.mark.asyncio
    async def test_cancel_unresponsive_task_after_grace(self):
        """测试处理函数不响应取消时，宽限期后释放 Agent"""
        async def stubborn(payload, context):
            await asyncio.sleep(10)

        async with Orchestrator(make_config(cancel_grace_period_s=0.05)) as orchestrator:
            orchestrator.register_agent("a", stubborn)
            task_id = orchestrator.submit_task("stubborn")
            await asyncio.sleep(0.01)

            orchestrator.cancel_task(task_id)
            event = await orchestrator.wait_for_task(task_id, timeout_s=1)

            assert event.status == TaskStatus.CANCELLED
            assert "grace period" in event.error
            assert orchestrator.get_agents()[0].status == AgentStatus.IDLE

    @pytest.mark.asyncio
    async def test_cancel_assigned_before_running(self):
        """测试派发后、开始运行前取消：处理函数不会被调用"""
        calls = []

        async def handler(payload, context):
            calls.append(payload)
            return payload

        async with Orchestrator(make_config()) as orchestrator:
            agent_id = orchestrator.register_agent("a", handler)
            task_id = orchestrator.submit_task("assigned", "x")
            assert orchestrator.get_task(task_id).status == TaskStatus.ASSIGNED

            orchestrator.cancel_task(task_id)
            event = await orchestrator.wait_for_task(task_id, timeout_s=1)

            assert event.status == TaskStatus.CANCELLED
            assert event.error_code == ErrorKind.CANCELLED
            assert event.agent_id == agent_id
            assert orchestrator.get_agents()[0].status == AgentStatus.IDLE

        assert calls == []


class TestTimeout:
    """超时测试"""

    @pytest.mark.asyncio
    async def test_timeout_marks_failed(self):
        """测试超时任务立即标记为 Failed(timeout)"""
        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("a", until_cancelled)
            task_id = orchestrator.submit_task("slow", timeout_s=0.05)

            event = await orchestrator.wait_for_task(task_id, timeout_s=1)
            assert event.status == TaskStatus.FAILED
            assert event.error_code == ErrorKind.TIMEOUT

            with pytest.raises(TaskTimeoutError):
                await orchestrator.get_output(task_id)

            stats = orchestrator.get_stats()["tasks"]
            assert stats["timeouts"] == 1
            assert stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_late_result_discarded(self):
        """测试超时后的迟到结果被丢弃，Agent 在处理函数返回后空闲"""
        async def late(payload, context):
            while not context.cancelled:
                await asyncio.sleep(0.005)
            return "late result"

        async with Orchestrator(make_config(cancel_grace_period_s=5)) as orchestrator:
            orchestrator.register_agent("a", late)
            results = orchestrator.subscribe_results()
            slow = orchestrator.submit_task("slow", timeout_s=0.05)
            follow_up = orchestrator.submit_task("next", "ok")

            events = await collect(results, 2)

        assert [e.task_id for e in events] == [slow, follow_up]
        assert events[0].status == TaskStatus.FAILED
        assert events[0].output is None
        assert events[1].output == "ok"

    @pytest.mark.asyncio
    async def test_default_timeout(self):
        """测试配置中的默认超时"""
        async with Orchestrator(make_config(default_timeout_s=0.05)) as orchestrator:
            orchestrator.register_agent("a", until_cancelled)
            event = await orchestrator.wait_for_task(orchestrator.submit_task("slow"), timeout_s=1)

        assert event.error_code == ErrorKind.TIMEOUT


class TestFailureIsolation:
    """失败隔离测试"""

    @pytest.mark.asyncio
    async def test_handler_error_does_not_affect_others(self):
        """测试处理函数异常只影响自身任务"""
        async def flaky(payload, context):
            if payload == "boom":
                raise ValueError("boom")
            return payload

        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("a", flaky)
            bad = orchestrator.submit_task("bad", "boom")
            good = orchestrator.submit_task("good", "fine")

            failed, ok = await orchestrator.wait_all([bad, good], timeout_s=2)

            with pytest.raises(HandlerError):
                await orchestrator.get_output(bad)

            info = orchestrator.get_agents()[0]

        assert failed.status == TaskStatus.FAILED
        assert failed.error_code == ErrorKind.HANDLER_ERROR
        assert failed.error == "ValueError: boom"
        assert ok.output == "fine"
        assert info.failed_tasks == 1
        assert info.total_tasks == 2

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event(self):
        """测试每个任务恰好发布一个终态事件"""
        async def mixed(payload, context):
            if payload % 3 == 0:
                raise RuntimeError("bad input")
            await asyncio.sleep(0.005)
            return payload

        orchestrator = Orchestrator(make_config())
        results = orchestrator.subscribe_results()
        await orchestrator.start()

        orchestrator.register_agent("a", mixed)
        orchestrator.register_agent("b", mixed)
        ids = [orchestrator.submit_task(f"t{i}", i) for i in range(10)]
        orchestrator.cancel_task(ids[-1])

        await orchestrator.shutdown(drain=True, timeout_s=2)
        events = [event async for event in results]

        counts = Counter(e.task_id for e in events if e.is_terminal)
        assert set(counts) == set(ids)
        assert set(counts.values()) == {1}

    @pytest.mark.asyncio
    async def test_system_exit_in_thread_handler(self):
        """测试同步处理函数调用 sys.exit 只让自身任务失败"""
        def handler(payload, context):
            if payload == "quit":
                sys.exit(3)
            return payload

        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("a", handler)
            quit_id = orchestrator.submit_task("quit", "quit")
            next_id = orchestrator.submit_task("next", "still here")

            failed, ok = await orchestrator.wait_all([quit_id, next_id], timeout_s=2)

        assert failed.status == TaskStatus.FAILED
        assert failed.error_code == ErrorKind.HANDLER_ERROR
        assert "SystemExit" in failed.error
        assert ok.output == "still here"

    @pytest.mark.asyncio
    async def test_system_exit_in_async_handler(self):
        """测试协程处理函数抛出 SystemExit 不会终止调度"""
        async def handler(payload, context):
            if payload == "quit":
                raise SystemExit(4)
            return payload

        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("a", handler)
            quit_id = orchestrator.submit_task("quit", "quit")
            next_id = orchestrator.submit_task("next", "ok")

            failed, ok = await orchestrator.wait_all([quit_id, next_id], timeout_s=2)

        assert failed.status == TaskStatus.FAILED
        assert failed.error == "SystemExit: 4"
        assert ok.output == "ok"

    @pytest.mark.asyncio
    async def test_selector_error_cancels_only_that_task(self):
        """测试自定义选择函数出错时只终止对应任务，其余任务照常调度"""
        def selector(candidates, task):
            if task.name == "bad":
                raise RuntimeError("no agent for you")
            return candidates[0]

        orchestrator = Orchestrator(SwarmConfig(
            dispatcher=DispatcherConfig(cancel_grace_period_s=0.2),
            registry=AgentRegistryConfig(
                selection_policy=SelectionPolicy.CUSTOM, custom_selector=selector
            )
        ))
        results = orchestrator.subscribe_results()
        orchestrator.register_agent("a", echo)
        bad = orchestrator.submit_task("bad", "x", priority=9)
        good = orchestrator.submit_task("good", "y", priority=1)

        await orchestrator.start()
        events = await collect(results, 2)

        by_id = {e.task_id: e for e in events}
        assert by_id[bad].status == TaskStatus.CANCELLED
        assert by_id[bad].error_code == ErrorKind.SELECTION_ERROR
        assert "no agent for you" in by_id[bad].error
        assert by_id[good].output == "y"

        with pytest.raises(AgentSelectionError):
            await orchestrator.get_output(bad)
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_selector_returning_stranger(self):
        """测试选择函数返回非候选 Agent 时任务以 selection_error 结束"""
        stranger = FunctionAgent(name="stranger", handler=echo)

        config = SwarmConfig(registry=AgentRegistryConfig(
            selection_policy=SelectionPolicy.CUSTOM,
            custom_selector=lambda candidates, task: stranger
        ))
        async with Orchestrator(config) as orchestrator:
            orchestrator.register_agent("a", echo)
            event = await orchestrator.wait_for_task(orchestrator.submit_task("t"), timeout_s=1)

        assert event.status == TaskStatus.CANCELLED
        assert event.error_code == ErrorKind.SELECTION_ERROR
        assert stranger.total_tasks == 0


class TestAgentLifecycle:
    """Agent 注销测试"""

    @pytest.mark.asyncio
    async def test_unregister_busy_agent(self):
        """测试注销忙碌 Agent：未指定 force 时拒绝，force 时取消任务"""
        started = asyncio.Event()

        async def handler(payload, context):
            started.set()
            await until_cancelled(payload, context)

        async with Orchestrator(make_config()) as orchestrator:
            agent_id = orchestrator.register_agent("a", handler)
            task_id = orchestrator.submit_task("long")
            await asyncio.wait_for(started.wait(), 1)

            with pytest.raises(AgentBusyError):
                orchestrator.unregister_agent(agent_id)
            assert len(orchestrator.get_agents()) == 1

            orchestrator.unregister_agent(agent_id, force=True)
            event = await orchestrator.wait_for_task(task_id, timeout_s=1)

            assert event.status == TaskStatus.CANCELLED
            assert orchestrator.get_agents() == []

            with pytest.raises(AgentNotFoundError):
                orchestrator.unregister_agent(agent_id)

    @pytest.mark.asyncio
    async def test_force_unregister_during_timeout_grace(self):
        """测试超时后宽限期内强制注销：任务保持 Failed(timeout)，不再发布事件"""
        async def stubborn(payload, context):
            await asyncio.sleep(10)

        async with Orchestrator(make_config(cancel_grace_period_s=0.3)) as orchestrator:
            agent_id = orchestrator.register_agent("a", stubborn)
            results = orchestrator.subscribe_results()
            task_id = orchestrator.submit_task("slow", timeout_s=0.05)

            event = await results.next(timeout=1)
            assert event.status == TaskStatus.FAILED
            assert event.error_code == ErrorKind.TIMEOUT
            assert orchestrator.get_agents()[0].status == AgentStatus.BUSY

            with pytest.raises(AgentBusyError):
                orchestrator.unregister_agent(agent_id)

            orchestrator.unregister_agent(agent_id, force=True)

            assert orchestrator.get_agents() == []
            assert orchestrator.get_task(task_id).status == TaskStatus.FAILED
            assert (await orchestrator.wait_for_task(task_id)).error_code == ErrorKind.TIMEOUT
            assert results.pending == 0

    @pytest.mark.asyncio
    async def test_unregister_calls_teardown(self):
        """测试注销时调用 Agent 清理"""
        class RecordingAgent(BaseAgent):
            agent_type = "recording"

            def __init__(self):
                super().__init__(name="recorder")
                self.torn_down = False

            async def process(self, payload, context):
                return payload

            async def teardown(self):
                self.torn_down = True

        agent = RecordingAgent()
        orchestrator = Orchestrator(make_config())
        await orchestrator.start()
        orchestrator.add_agent(agent)
        orchestrator.unregister_agent(agent.agent_id)
        await orchestrator.shutdown()

        assert agent.torn_down


class TestShutdown:
    """关闭流程测试"""

    @pytest.mark.asyncio
    async def test_drain_completes_outstanding(self):
        """测试 drain=True 等待所有任务完成"""
        async def handler(payload, context):
            await asyncio.sleep(0.01)
            return payload * 2

        orchestrator = Orchestrator(make_config())
        results = orchestrator.subscribe_results()
        await orchestrator.start()
        orchestrator.register_agent("a", handler)
        ids = [orchestrator.submit_task(f"t{i}", i) for i in range(4)]

        await orchestrator.shutdown(drain=True)
        events = [event async for event in results]

        assert [e.task_id for e in events] == ids
        assert [e.output for e in events] == [0, 2, 4, 6]

    @pytest.mark.asyncio
    async def test_no_drain_cancels_everything(self):
        """测试 drain=False 取消排队和在途任务"""
        started = asyncio.Event()

        async def handler(payload, context):
            started.set()
            await until_cancelled(payload, context)

        orchestrator = Orchestrator(make_config())
        results = orchestrator.subscribe_results()
        await orchestrator.start()
        orchestrator.register_agent("a", handler)
        ids = [orchestrator.submit_task(f"t{i}") for i in range(3)]
        await asyncio.wait_for(started.wait(), 1)

        await orchestrator.shutdown(drain=False)
        events = [event async for event in results]

        assert {e.task_id for e in events} == set(ids)
        assert all(e.status == TaskStatus.CANCELLED for e in events)

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_remaining(self):
        """测试 drain 超时后取消剩余任务"""
        orchestrator = Orchestrator(make_config())
        await orchestrator.start()
        orchestrator.register_agent("a", until_cancelled)
        running = orchestrator.submit_task("running")
        queued = orchestrator.submit_task("queued")

        await orchestrator.shutdown(drain=True, timeout_s=0.05)

        assert orchestrator.get_task(running).status == TaskStatus.CANCELLED
        assert orchestrator.get_task(queued).status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_drain_cancels_task_without_capable_agent(self):
        """测试 drain 不等待没有 Agent 能执行的任务"""
        orchestrator = Orchestrator(make_config())
        await orchestrator.start()
        orchestrator.register_agent("cpu", echo, capabilities=["cpu"])
        stranded = orchestrator.submit_task("train", required_capabilities=["tpu"])
        normal = orchestrator.submit_task("echo", "x")

        await asyncio.wait_for(orchestrator.shutdown(drain=True), 2)

        assert orchestrator.get_task(normal).status == TaskStatus.COMPLETED
        event = await orchestrator.wait_for_task(stranded)
        assert event.status == TaskStatus.CANCELLED
        assert "no eligible agent" in event.error

    @pytest.mark.asyncio
    async def test_drain_with_all_agents_unavailable(self):
        """测试所有 Agent 不可用时 drain 立即结束并取消排队任务"""
        orchestrator = Orchestrator(make_config())
        await orchestrator.start()
        agent_id = orchestrator.register_agent("a", echo)
        orchestrator.mark_agent_unavailable(agent_id)
        task_id = orchestrator.submit_task("waiting")

        await asyncio.wait_for(orchestrator.shutdown(drain=True), 2)

        assert orchestrator.get_task(task_id).status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_subscription_ends_on_close(self):
        """测试关闭后订阅结束"""
        orchestrator = Orchestrator(make_config())
        await orchestrator.start()
        results = orchestrator.subscribe_results()

        await orchestrator.shutdown()

        assert [event async for event in results] == []
        assert orchestrator.event_channel.closed


class TestLifecycleEvents:
    """非终态事件测试"""

    @pytest.mark.asyncio
    async def test_lifecycle_events_in_order(self):
        """测试开启后按顺序发布 queued / assigned / running / completed"""
        async with Orchestrator(make_config(emit_lifecycle_events=True)) as orchestrator:
            orchestrator.register_agent("a", echo)
            results = orchestrator.subscribe_results()
            task_id = orchestrator.submit_task("t", "x")

            events = await collect(results, 4)

        assert all(e.task_id == task_id for e in events)
        assert [e.status for e in events] == [
            TaskStatus.QUEUED,
            TaskStatus.ASSIGNED,
            TaskStatus.RUNNING,
            TaskStatus.COMPLETED,
        ]
        assert [e.is_terminal for e in events] == [False, False, False, True]

    @pytest.mark.asyncio
    async def test_lifecycle_events_off_by_default(self):
        """测试默认只发布终态事件"""
        async with Orchestrator(make_config()) as orchestrator:
            orchestrator.register_agent("a", echo)
            results = orchestrator.subscribe_results()
            orchestrator.submit_task("t", "x")

            event = await results.next(timeout=1)
            assert event.status == TaskStatus.COMPLETED
            assert results.pending == 0


class TestRunSwarm:
    """并发运行测试"""

    @pytest.mark.asyncio
    async def test_run_swarm_writes_log(self, tmp_path):
        """测试并发运行并写入 JSON Lines 结果"""
        async def double(payload, context):
            await asyncio.sleep(0.005)
            return payload * 2

        output = tmp_path / "responses.jsonl"
        events = await run_swarm(
            double, 5,
            payloads=[1, 2, 3, 4, 5],
            concurrency=2,
            output_file=output,
            config=make_config()
        )

        assert len(events) == 5
        assert sorted(e.output for e in events) == [2, 4, 6, 8, 10]

        lines = [json.loads(line) for line in output.read_text(encoding="utf-8").splitlines()]
        assert len(lines) == 5
        assert all(line["status"] == "success" for line in lines)
        assert [line["task"] for line in lines] == [e.task_id for e in events]

    @pytest.mark.asyncio
    async def test_run_swarm_log_written_as_results_arrive(self, tmp_path):
        """测试中途被取消时已完成的结果已经写入日志"""
        async def nap(payload, context):
            await asyncio.sleep(payload)
            return payload

        output = tmp_path / "responses.jsonl"
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                run_swarm(nap, 3, payloads=[0, 0, 10], output_file=output, config=make_config()),
                0.5
            )

        lines = [json.loads(line) for line in output.read_text(encoding="utf-8").splitlines()]
        assert len(lines) == 2
        assert all(line["response"] == 0 for line in lines)

    @pytest.mark.asyncio
    async def test_run_swarm_reports_failures(self):
        """测试失败的运行也会返回终态事件"""
        def sometimes(payload, context):
            if payload:
                raise ValueError("nope")
            return "ok"

        events = await run_swarm(sometimes, 4, payloads=[False, True, False, True], config=make_config())

        assert Counter(e.status for e in events) == {
            TaskStatus.COMPLETED: 2,
            TaskStatus.FAILED: 2,
        }

    @pytest.mark.asyncio
    async def test_run_swarm_invalid_arguments(self):
        """测试参数校验"""
        with pytest.raises(ValueError):
            await run_swarm(echo, 0)

        with pytest.raises(ValueError):
            await run_swarm(echo, 2, payloads=[1])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
