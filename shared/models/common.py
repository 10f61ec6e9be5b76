"""
共享数据模型 - 通用类型
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum
import uuid


def generate_id(prefix: str = "") -> str:
    """生成唯一 ID"""
    uid = uuid.uuid4().hex[:12]
    return f"{prefix}_{uid}" if prefix else uid


class TaskStatus(str, Enum):
    """任务状态"""
    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})


class TaskPriority(int, Enum):
    """任务优先级（数值越大越先调度）"""
    LOW = 1
    NORMAL = 5
    HIGH = 8
    URGENT = 10


class AgentStatus(str, Enum):
    """Agent 状态"""
    IDLE = "idle"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


class ErrorKind(str, Enum):
    """错误类型（事件中的 error_code）"""
    DUPLICATE_AGENT = "duplicate_agent"
    AGENT_NOT_FOUND = "agent_not_found"
    AGENT_BUSY = "agent_busy"
    QUEUE_FULL = "queue_full"
    INVALID_TRANSITION = "invalid_transition"
    TASK_NOT_FOUND = "task_not_found"
    ORCHESTRATOR_CLOSED = "orchestrator_closed"
    HANDLER_ERROR = "handler_error"
    SELECTION_ERROR = "selection_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class AgentInfo(BaseModel):
    """Agent 信息快照（只读视图）"""
    agent_id: str
    name: str
    status: AgentStatus

    # 能力
    capabilities: list[str] = Field(default_factory=list)

    # 当前任务
    current_task_id: Optional[str] = None

    # 统计
    total_tasks: int = Field(0)
    failed_tasks: int = Field(0)
    registered_at: datetime = Field(default_factory=datetime.utcnow)
