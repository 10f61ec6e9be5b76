"""
Swarm SDK - 结果日志（JSON Lines）
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Union

from shared.models import TaskEvent, TaskStatus

from .event_channel import Subscription

logger = logging.getLogger(__name__)


def format_event(event: TaskEvent) -> Dict[str, Any]:
    """终态事件 -> 日志条目"""
    entry: Dict[str, Any] = {
        "task": event.task_id,
        "name": event.task_name,
        "agent": event.agent_id,
    }

    if event.status == TaskStatus.COMPLETED:
        entry["status"] = "success"
        entry["response"] = event.output
    elif event.status == TaskStatus.CANCELLED:
        entry["status"] = "cancelled"
        entry["error"] = event.error
    else:
        entry["status"] = "error"
        entry["error"] = event.error
        entry["error_code"] = event.error_code.value if event.error_code else None

    if event.duration_s is not None:
        entry["duration_s"] = round(event.duration_s, 6)
    return entry


class ResultLogWriter:
    """把终态事件逐行写入 JSON Lines 文件

    Usage:
        writer = ResultLogWriter("responses.jsonl")
        writer.reset()
        await writer.consume(orchestrator.subscribe_results())
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.written = 0

    def reset(self):
        """创建（或清空）日志文件"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")
        self.written = 0

    def append(self, event: TaskEvent):
        """追加一个终态事件；非终态事件忽略"""
        if not event.is_terminal:
            return

        line = json.dumps(format_event(event), ensure_ascii=False, default=str)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
        self.written += 1

    def write_all(self, events: Iterable[TaskEvent]):
        """重写文件并写入全部事件"""
        self.reset()
        for event in events:
            self.append(event)
        logger.info(f"Wrote {self.written} results to {self.path}")

    async def consume(self, subscription: Subscription) -> int:
        """持续消费订阅直到通道关闭

        Returns:
            写入的条目数
        """
        async for event in subscription:
            self.append(event)
        logger.info(f"Result log {self.path} closed after {self.written} entries")
        return self.written
