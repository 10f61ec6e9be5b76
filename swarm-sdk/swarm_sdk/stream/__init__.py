"""
Swarm SDK - 事件流模块

负责任务结果事件的广播、订阅和落盘。
"""

from .event_channel import EventChannel, Subscription
from .result_log import ResultLogWriter, format_event

__all__ = ["EventChannel", "Subscription", "ResultLogWriter", "format_event"]
