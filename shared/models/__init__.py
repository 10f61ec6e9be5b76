"""
共享数据模型包
"""

from .common import (
    TaskStatus,
    TaskPriority,
    TERMINAL_STATUSES,
    AgentStatus,
    AgentInfo,
    ErrorKind,
    generate_id,
)

from .task import (
    TASK_TRANSITIONS,
    Task,
    TaskEvent,
)

from .llm import (
    MessageRole,
    ChatMessage,
    LLMUsage,
    AnthropicRequest,
    AnthropicResponse,
    ChatCompletionResult,
)

__all__ = [
    # Common
    "TaskStatus",
    "TaskPriority",
    "TERMINAL_STATUSES",
    "AgentStatus",
    "AgentInfo",
    "ErrorKind",
    "generate_id",

    # Task
    "TASK_TRANSITIONS",
    "Task",
    "TaskEvent",

    # LLM
    "MessageRole",
    "ChatMessage",
    "LLMUsage",
    "AnthropicRequest",
    "AnthropicResponse",
    "ChatCompletionResult",
]
