"""
Swarm SDK - Agent 基类

提供给 Agent 实现者使用的基类。实现者只需实现 process() 方法，
调度、并发、超时和取消由编排器负责。
"""

import asyncio
import inspect
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional
from datetime import datetime

from shared.models import (
    AgentInfo,
    AgentStatus,
    AnthropicRequest,
    ChatMessage,
    MessageRole,
    Task,
    generate_id,
)

from .config import HTTPClientConfig, LLMConfig
from .errors import AgentBusyError, HandlerError, TaskCancelledError
from .http.async_client import AsyncHTTPClient, LLMAPIClient

logger = logging.getLogger(__name__)


class CancellationToken:
    """协作式取消令牌

    编排器在取消或超时时设置；处理函数应定期检查。
    基于 threading.Event，线程中运行的同步处理函数也可以安全读取。
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TaskCancelledError(f"Task cancelled: {self.reason}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """阻塞等待取消信号（仅在线程中使用）"""
        return self._event.wait(timeout)


class ExecutionContext:
    """单次执行的上下文，随 payload 一起传给处理函数"""

    def __init__(
        self,
        task_id: str,
        task_name: str,
        agent_id: str,
        token: CancellationToken,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.task_id = task_id
        self.task_name = task_name
        self.agent_id = agent_id
        self.token = token
        self.metadata = metadata or {}

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def raise_if_cancelled(self):
        self.token.raise_if_cancelled()


class BaseAgent(ABC):
    """Agent 基类

    Agent 一次只执行一个任务。状态由是否持有任务推导：
    持有任务即 Busy，否则按可用标记为 Idle 或 Unavailable。

    Usage:
        class EchoAgent(BaseAgent):
            agent_type = "echo"

            async def process(self, payload, context):
                context.raise_if_cancelled()
                return payload

        orchestrator.add_agent(EchoAgent(name="echo-1"))
    """

    agent_type: str = "base"  # 子类覆盖

    def __init__(
        self,
        name: Optional[str] = None,
        agent_id: Optional[str] = None,
        capabilities: Optional[Iterable[str]] = None
    ):
        self.name = name or self.agent_type
        self.agent_id = agent_id or generate_id(f"agent-{self.agent_type}")
        self.capabilities = frozenset(capabilities or ())

        # 状态
        self.available = True
        self.current_task_id: Optional[str] = None

        # 统计
        self.total_tasks = 0
        self.failed_tasks = 0
        self.last_dispatch_seq = -1
        self.registered_at = datetime.utcnow()

    @abstractmethod
    async def process(self, payload: Any, context: ExecutionContext) -> Any:
        """处理任务（子类实现）

        Args:
            payload: 任务数据
            context: 执行上下文（含取消令牌）

        Returns:
            处理结果
        """
        pass

    async def teardown(self):
        """清理（子类可覆盖）

        在 Agent 注销或编排器关闭时调用。
        """
        pass

    @property
    def state(self) -> AgentStatus:
        if self.current_task_id is not None:
            return AgentStatus.BUSY
        if not self.available:
            return AgentStatus.UNAVAILABLE
        return AgentStatus.IDLE

    @property
    def is_idle(self) -> bool:
        return self.state == AgentStatus.IDLE

    def can_run(self, task: Task) -> bool:
        """是否具备执行该任务所需的能力"""
        return task.required_capabilities <= self.capabilities

    def acquire(self, task_id: str):
        """占用 Agent（由调度器调用）"""
        if self.current_task_id is not None:
            raise AgentBusyError(
                f"Agent {self.agent_id} is busy with task {self.current_task_id}"
            )
        self.current_task_id = task_id
        self.total_tasks += 1

    def release(self, task_id: str) -> bool:
        """释放 Agent；只有持有该任务时才生效"""
        if self.current_task_id != task_id:
            return False
        self.current_task_id = None
        return True

    async def execute(self, task: Task, context: ExecutionContext) -> Any:
        """执行任务

        Agent 必须已被该任务占用；持有其他任务时拒绝执行。
        """
        if self.current_task_id != task.task_id:
            raise AgentBusyError(
                f"Agent {self.agent_id} cannot execute {task.task_id}: "
                f"holding {self.current_task_id}"
            )
        return await self.process(task.payload, context)

    def info(self) -> AgentInfo:
        return AgentInfo(
            agent_id=self.agent_id,
            name=self.name,
            status=self.state,
            capabilities=sorted(self.capabilities),
            current_task_id=self.current_task_id,
            total_tasks=self.total_tasks,
            failed_tasks=self.failed_tasks,
            registered_at=self.registered_at,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.agent_id} state={self.state.value}>"


def _is_async_callable(func: Callable) -> bool:
    if inspect.iscoroutinefunction(func):
        return True
    return inspect.iscoroutinefunction(getattr(func, "__call__", None))


class FunctionAgent(BaseAgent):
    """把普通函数包装成 Agent

    处理函数签名为 handler(payload, context)。
    协程函数直接在事件循环中等待；同步函数放到线程中运行，避免阻塞调度器。
    """

    agent_type = "function"

    def __init__(
        self,
        name: str,
        handler: Callable[[Any, ExecutionContext], Any],
        agent_id: Optional[str] = None,
        capabilities: Optional[Iterable[str]] = None
    ):
        super().__init__(name=name, agent_id=agent_id, capabilities=capabilities)
        self.handler = handler

    async def process(self, payload: Any, context: ExecutionContext) -> Any:
        if _is_async_callable(self.handler):
            return await self.handler(payload, context)

        try:
            result = await asyncio.to_thread(self.handler, payload, context)
        except (Exception, asyncio.CancelledError):
            raise
        except BaseException as e:
            # 线程里的 SystemExit / KeyboardInterrupt 不能传到事件循环
            raise HandlerError(f"handler raised {type(e).__name__}: {e}") from e
        if inspect.isawaitable(result):
            result = await result
        return result


class LLMAgentBase(BaseAgent):
    """LLM Agent 基类

    持有一个 LLMAPIClient；未传入时按配置自行创建 HTTP 连接池，
    首次处理任务时连接，teardown 时断开。
    """

    agent_type = "llm"

    def __init__(
        self,
        name: Optional[str] = None,
        llm_client: Optional[LLMAPIClient] = None,
        llm_config: Optional[LLMConfig] = None,
        http_config: Optional[HTTPClientConfig] = None,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs
    ):
        super().__init__(name=name, **kwargs)
        self._owns_client = llm_client is None
        self.llm = llm_client or LLMAPIClient(AsyncHTTPClient(http_config), llm_config)
        self.system_prompt = system_prompt
        self.model = model

    async def _ensure_connected(self):
        if self._owns_client and not self.llm.http.connected:
            await self.llm.http.connect()

    async def teardown(self):
        if self._owns_client:
            await self.llm.http.disconnect()

    @staticmethod
    def _prompt_from(payload: Any) -> str:
        if isinstance(payload, dict):
            return str(payload.get("prompt") or payload.get("task") or "")
        return str(payload)


class OpenAIChatAgent(LLMAgentBase):
    """调用 OpenAI Chat Completions 的 Agent

    payload 可以是字符串（用户消息），或包含 prompt / system_prompt / model 的 dict。
    返回回复文本。
    """

    agent_type = "openai"

    async def process(self, payload: Any, context: ExecutionContext) -> Any:
        context.raise_if_cancelled()
        await self._ensure_connected()

        options = payload if isinstance(payload, dict) else {}
        result = await self.llm.call_openai_chat(
            user_task=self._prompt_from(payload),
            system_prompt=options.get("system_prompt", self.system_prompt),
            model=options.get("model", self.model),
        )
        logger.info(f"OpenAI agent {self.agent_id} finished task {context.task_id}")
        return result.text


class AnthropicAgent(LLMAgentBase):
    """调用 Anthropic Messages API 的 Agent

    payload 可以是字符串，或包含 prompt / messages / system / max_tokens /
    temperature 的 dict。返回回复文本。
    """

    agent_type = "anthropic"

    async def process(self, payload: Any, context: ExecutionContext) -> Any:
        context.raise_if_cancelled()
        await self._ensure_connected()

        options = payload if isinstance(payload, dict) else {}
        messages = options.get("messages") or [
            ChatMessage(role=MessageRole.USER, content=self._prompt_from(payload))
        ]
        request = AnthropicRequest(
            model=options.get("model", self.model or self.llm.config.anthropic_model),
            max_tokens=options.get("max_tokens", self.llm.config.max_tokens),
            messages=messages,
            system=options.get("system", self.system_prompt),
            temperature=options.get("temperature"),
        )

        response = await self.llm.call_anthropic_messages(request)
        logger.info(f"Anthropic agent {self.agent_id} finished task {context.task_id}")
        return response.text
