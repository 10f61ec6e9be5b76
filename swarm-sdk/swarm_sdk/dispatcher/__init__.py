"""
Swarm SDK - 任务调度模块

负责任务排队、匹配空闲 Agent、执行、超时与取消。
"""

from .task_dispatcher import TaskDispatcher, InflightEntry
from .task_queue import TaskQueue
from .state_machine import transition

__all__ = ["TaskDispatcher", "InflightEntry", "TaskQueue", "transition"]
