"""
Swarm SDK - Agent 注册表
"""

import itertools
import logging
from typing import Optional, Dict, List, Any

from shared.models import AgentStatus, Task

from ..config import AgentRegistryConfig, SelectionPolicy
from ..errors import AgentNotFoundError, DuplicateAgentError
from ..worker_base import BaseAgent

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Agent 注册表

    负责：
    - Agent 注册与注销
    - 空闲 Agent 选择（可插拔策略）
    - Agent 可用性跟踪

    注册表按注册顺序保存 Agent；给定同一快照和游标，选择结果是确定的。
    """

    def __init__(self, config: Optional[AgentRegistryConfig] = None):
        self.config = config or AgentRegistryConfig()

        if (
            self.config.selection_policy == SelectionPolicy.CUSTOM
            and self.config.custom_selector is None
        ):
            raise ValueError("custom selection policy requires custom_selector")

        # Agent 注册表: {agent_id: BaseAgent}
        self._agents: Dict[str, BaseAgent] = {}

        # 名称索引: {name: agent_id}
        self._names: Dict[str, str] = {}

        # 注册序号: {agent_id: seq}，单调递增
        self._positions: Dict[str, int] = {}
        self._seq = itertools.count()

        # Round Robin 游标：上次选中 Agent 的注册序号
        self._rr_last_pos = -1

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def register(self, agent: BaseAgent):
        """注册 Agent

        Args:
            agent: Agent 实例（按引用保存）
        """
        if agent.agent_id in self._agents:
            raise DuplicateAgentError(f"Agent id already registered: {agent.agent_id}")
        if agent.name in self._names:
            raise DuplicateAgentError(f"Agent name already registered: {agent.name}")

        self._agents[agent.agent_id] = agent
        self._names[agent.name] = agent.agent_id
        self._positions[agent.agent_id] = next(self._seq)

        logger.info(f"Registered agent: {agent.agent_id} (name={agent.name})")

    def unregister(self, agent_id: str) -> BaseAgent:
        """注销 Agent

        Args:
            agent_id: Agent ID

        Returns:
            被移除的 Agent
        """
        agent = self.get(agent_id)

        del self._agents[agent_id]
        del self._names[agent.name]
        del self._positions[agent_id]

        logger.info(f"Unregistered agent: {agent_id}")
        return agent

    def get(self, agent_id: str) -> BaseAgent:
        if agent_id not in self._agents:
            raise AgentNotFoundError(f"Agent not found: {agent_id}")
        return self._agents[agent_id]

    def find(self, agent_id: str) -> Optional[BaseAgent]:
        return self._agents.get(agent_id)

    def get_by_name(self, name: str) -> BaseAgent:
        if name not in self._names:
            raise AgentNotFoundError(f"Agent not found: {name}")
        return self._agents[self._names[name]]

    def get_agents(self, status: Optional[AgentStatus] = None) -> List[BaseAgent]:
        """获取 Agent 列表（注册顺序）

        Args:
            status: 过滤状态（可选）
        """
        if status is None:
            return list(self._agents.values())
        return [a for a in self._agents.values() if a.state == status]

    def set_available(self, agent_id: str, available: bool):
        """标记 Agent 可用 / 不可用"""
        agent = self.get(agent_id)
        agent.available = available
        logger.info(f"Agent {agent_id} marked {'available' if available else 'unavailable'}")

    def idle_candidates(self, task: Task) -> List[BaseAgent]:
        """能执行该任务的空闲 Agent（注册顺序）"""
        return [a for a in self._agents.values() if a.is_idle and a.can_run(task)]

    def has_idle(self) -> bool:
        return any(a.is_idle for a in self._agents.values())

    def select_idle(self, task: Task) -> Optional[BaseAgent]:
        """为任务选择一个空闲 Agent

        Args:
            task: 待调度任务

        Returns:
            选中的 Agent 或 None
        """
        candidates = self.idle_candidates(task)
        if not candidates:
            return None

        policy = self.config.selection_policy

        if policy == SelectionPolicy.ROUND_ROBIN:
            selected = self._select_round_robin(candidates)
        elif policy == SelectionPolicy.LEAST_RECENTLY_USED:
            selected = self._select_least_recently_used(candidates)
        else:  # CUSTOM
            selected = self.config.custom_selector(candidates, task)
            if selected is not None and selected not in candidates:
                raise ValueError(
                    f"custom_selector returned an ineligible agent: {selected!r}"
                )

        if selected is not None:
            self._rr_last_pos = self._positions[selected.agent_id]
        return selected

    def _select_round_robin(self, candidates: List[BaseAgent]) -> BaseAgent:
        """轮询选择：注册顺序中位于上次选中者之后的第一个候选

        候选列表按注册顺序排列；上次选中者被注销后游标仍然有效。
        """
        for agent in candidates:
            if self._positions[agent.agent_id] > self._rr_last_pos:
                return agent
        return candidates[0]

    def _select_least_recently_used(self, candidates: List[BaseAgent]) -> BaseAgent:
        """最久未使用选择（同值按注册顺序）"""
        return min(candidates, key=lambda a: a.last_dispatch_seq)

    def get_stats(self) -> Dict[str, Any]:
        """获取注册表统计信息

        Returns:
            统计信息字典
        """
        stats = {
            "total_agents": len(self._agents),
            "by_status": {status.value: 0 for status in AgentStatus},
        }

        for agent in self._agents.values():
            stats["by_status"][agent.state.value] += 1

        return stats
