"""
Swarm SDK - 待调度任务队列
"""

import bisect
import itertools
from typing import Dict, Iterator, List, Optional, Tuple

from shared.models import Task

from ..errors import QueueFullError, TaskNotFoundError


class TaskQueue:
    """按优先级排序的任务队列

    高优先级在前，同优先级按提交顺序（FIFO）。
    没有优先级老化：持续有高优先级任务时，低优先级任务可能一直等待。
    """

    def __init__(self, max_depth: Optional[int] = None):
        self.max_depth = max_depth

        # 有序键: (-priority, seq)
        self._keys: List[Tuple[int, int]] = []
        self._tasks: Dict[Tuple[int, int], Task] = {}
        self._index: Dict[str, Tuple[int, int]] = {}
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._index

    def __iter__(self) -> Iterator[Task]:
        """按调度顺序遍历"""
        for key in list(self._keys):
            yield self._tasks[key]

    @property
    def full(self) -> bool:
        return self.max_depth is not None and len(self._keys) >= self.max_depth

    def push(self, task: Task):
        """入队

        Raises:
            QueueFullError: 已达到最大深度
        """
        if self.full:
            raise QueueFullError(
                f"Queue is full ({self.max_depth}), rejected task {task.task_id}"
            )

        key = (-task.priority, next(self._seq))
        bisect.insort(self._keys, key)
        self._tasks[key] = task
        self._index[task.task_id] = key

    def remove(self, task_id: str) -> Task:
        """移除指定任务"""
        if task_id not in self._index:
            raise TaskNotFoundError(f"Task not queued: {task_id}")

        key = self._index.pop(task_id)
        pos = bisect.bisect_left(self._keys, key)
        del self._keys[pos]
        return self._tasks.pop(key)

    def peek(self) -> Optional[Task]:
        if not self._keys:
            return None
        return self._tasks[self._keys[0]]

    def pop_all(self) -> List[Task]:
        """清空队列并按调度顺序返回所有任务"""
        tasks = [self._tasks[key] for key in self._keys]
        self._keys.clear()
        self._tasks.clear()
        self._index.clear()
        return tasks
