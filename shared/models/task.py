"""
共享数据模型 - 任务与事件
"""

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, computed_field
from typing import Any, Dict, FrozenSet, Optional
from datetime import datetime

from .common import ErrorKind, TaskPriority, TaskStatus, generate_id


# 合法的状态迁移表；未列出的迁移一律非法
TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.ASSIGNED, TaskStatus.CANCELLED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class Task(BaseModel):
    """任务

    创建后为值对象：除状态外所有字段不可修改。
    状态只能由调度器按 TASK_TRANSITIONS 推进。
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    task_id: str = Field(default_factory=lambda: generate_id("task"))
    name: str = Field(..., description="任务名称")
    payload: Any = Field(None, description="交给 Agent 处理的数据")
    priority: int = Field(int(TaskPriority.NORMAL), description="任务优先级")
    timeout_s: Optional[float] = Field(None, gt=0, description="超时时间（秒）")
    required_capabilities: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="执行该任务所需的 Agent 能力"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    metadata: dict = Field(default_factory=dict, description="扩展元数据")

    _status: TaskStatus = PrivateAttr(default=TaskStatus.QUEUED)

    @computed_field
    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    def can_transition(self, new_status: TaskStatus) -> bool:
        return new_status in TASK_TRANSITIONS[self._status]


class TaskEvent(BaseModel):
    """任务事件

    每个任务恰好发布一次终态事件；开启 emit_lifecycle_events 时
    还会发布 Queued / Assigned / Running 事件。
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str
    task_name: str
    status: TaskStatus
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[ErrorKind] = None
    agent_id: Optional[str] = None
    duration_s: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.COMPLETED
