"""
Swarm SDK - Agent 池模块

负责 Agent 的注册、可用性跟踪和选择策略。
"""

from .agent_registry import AgentRegistry

__all__ = [
    "AgentRegistry",
]
