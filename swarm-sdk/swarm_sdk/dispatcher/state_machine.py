"""
Swarm SDK - 任务状态机

Queued → Assigned → Running → {Completed | Failed}
Queued / Assigned / Running → Cancelled
"""

import logging

from shared.models import Task, TaskStatus

from ..errors import InvalidTransitionError

logger = logging.getLogger(__name__)


def transition(task: Task, new_status: TaskStatus):
    """推进任务状态

    Raises:
        InvalidTransitionError: 跳过或回退状态
    """
    old_status = task.status
    if not task.can_transition(new_status):
        raise InvalidTransitionError(
            f"Task {task.task_id}: illegal transition "
            f"{old_status.value} -> {new_status.value}"
        )

    task._status = new_status
    logger.debug(f"Task {task.task_id}: {old_status.value} -> {new_status.value}")
