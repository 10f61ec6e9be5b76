"""
Swarm SDK - 主入口包

Swarm SDK 是进程内的多 Agent 任务编排框架，包括：
- 任务排队（优先级 + FIFO）与调度
- Agent 注册与选择策略
- 超时、协作式取消与失败隔离
- 结果事件广播

主要组件：
- Orchestrator: 主客户端类
- TaskDispatcher: 任务调度
- AgentRegistry: Agent 注册表
- EventChannel: 结果事件通道
- BaseAgent: Agent 基类
"""

from .client import Orchestrator, run_swarm
from .config import (
    SwarmConfig,
    DispatcherConfig,
    AgentRegistryConfig,
    SelectionPolicy,
    HTTPClientConfig,
    LLMConfig,
)
from .errors import (
    OrchestratorError,
    DuplicateAgentError,
    AgentNotFoundError,
    AgentBusyError,
    QueueFullError,
    InvalidTransitionError,
    TaskNotFoundError,
    OrchestratorClosedError,
    HandlerError,
    AgentSelectionError,
    TaskTimeoutError,
    TaskCancelledError,
    raise_for_event,
)
from .dispatcher.task_dispatcher import TaskDispatcher
from .dispatcher.task_queue import TaskQueue
from .pool.agent_registry import AgentRegistry
from .stream.event_channel import EventChannel, Subscription
from .stream.result_log import ResultLogWriter
from .http.async_client import AsyncHTTPClient, HTTPResponse, HTTPRequestError, LLMAPIClient
from .worker_base import (
    BaseAgent,
    FunctionAgent,
    LLMAgentBase,
    OpenAIChatAgent,
    AnthropicAgent,
    CancellationToken,
    ExecutionContext,
)

__version__ = "0.1.0"

__all__ = [
    # 主客户端
    "Orchestrator",
    "run_swarm",

    # 配置
    "SwarmConfig",
    "DispatcherConfig",
    "AgentRegistryConfig",
    "SelectionPolicy",
    "HTTPClientConfig",
    "LLMConfig",

    # 错误
    "OrchestratorError",
    "DuplicateAgentError",
    "AgentNotFoundError",
    "AgentBusyError",
    "QueueFullError",
    "InvalidTransitionError",
    "TaskNotFoundError",
    "OrchestratorClosedError",
    "HandlerError",
    "AgentSelectionError",
    "TaskTimeoutError",
    "TaskCancelledError",
    "raise_for_event",

    # 任务调度
    "TaskDispatcher",
    "TaskQueue",

    # Agent 注册表
    "AgentRegistry",

    # 事件流
    "EventChannel",
    "Subscription",
    "ResultLogWriter",

    # HTTP 客户端
    "AsyncHTTPClient",
    "HTTPResponse",
    "HTTPRequestError",
    "LLMAPIClient",

    # Agent 基类
    "BaseAgent",
    "FunctionAgent",
    "LLMAgentBase",
    "OpenAIChatAgent",
    "AnthropicAgent",
    "CancellationToken",
    "ExecutionContext",
]
