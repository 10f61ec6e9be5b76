"""
Swarm SDK - 错误类型

调度层错误（重复注册、找不到、非法迁移等）同步抛给调用方；
处理函数的错误在 Agent 边界被捕获，只以 Failed 终态事件的形式出现。
"""

from typing import Any, Optional

from shared.models import ErrorKind, TaskEvent, TaskStatus


class OrchestratorError(Exception):
    """编排器错误基类"""
    code: ErrorKind = ErrorKind.HANDLER_ERROR

    def __init__(self, message: str, *, code: Optional[ErrorKind] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class DuplicateAgentError(OrchestratorError):
    code = ErrorKind.DUPLICATE_AGENT


class AgentNotFoundError(OrchestratorError):
    code = ErrorKind.AGENT_NOT_FOUND


class AgentBusyError(OrchestratorError):
    code = ErrorKind.AGENT_BUSY


class QueueFullError(OrchestratorError):
    code = ErrorKind.QUEUE_FULL


class InvalidTransitionError(OrchestratorError):
    code = ErrorKind.INVALID_TRANSITION


class TaskNotFoundError(OrchestratorError):
    code = ErrorKind.TASK_NOT_FOUND


class OrchestratorClosedError(OrchestratorError):
    """编排器已关闭，不再接受新任务"""
    code = ErrorKind.ORCHESTRATOR_CLOSED


class HandlerError(OrchestratorError):
    """处理函数抛出的异常（仅出现在事件中）"""
    code = ErrorKind.HANDLER_ERROR


class AgentSelectionError(OrchestratorError):
    """自定义选择函数抛出异常或返回了非候选 Agent（仅出现在事件中）"""
    code = ErrorKind.SELECTION_ERROR


class TaskTimeoutError(OrchestratorError):
    code = ErrorKind.TIMEOUT


class TaskCancelledError(OrchestratorError):
    """处理函数检测到取消信号后抛出，表示已确认取消"""
    code = ErrorKind.CANCELLED


_EVENT_ERRORS = {
    ErrorKind.HANDLER_ERROR: HandlerError,
    ErrorKind.TIMEOUT: TaskTimeoutError,
    ErrorKind.CANCELLED: TaskCancelledError,
    ErrorKind.SELECTION_ERROR: AgentSelectionError,
}


def raise_for_event(event: TaskEvent) -> Any:
    """终态事件 -> 输出；失败或取消时抛出对应异常"""
    if event.status == TaskStatus.COMPLETED:
        return event.output
    if not event.is_terminal:
        raise InvalidTransitionError(
            f"Task {event.task_id} is {event.status.value}, no result yet"
        )

    error_cls = _EVENT_ERRORS.get(event.error_code, HandlerError)
    raise error_cls(f"Task {event.task_id} {event.status.value}: {event.error}")
