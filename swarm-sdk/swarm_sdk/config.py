"""
Swarm SDK - 配置管理
"""

import os
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Callable, List, Optional
from enum import Enum


class SelectionPolicy(str, Enum):
    """空闲 Agent 选择策略"""
    ROUND_ROBIN = "round_robin"
    LEAST_RECENTLY_USED = "least_recently_used"
    CUSTOM = "custom"


class DispatcherConfig(BaseModel):
    """调度器配置"""
    max_queue_depth: Optional[int] = Field(
        None, ge=1, description="最大队列深度，None 表示不限"
    )
    default_timeout_s: Optional[float] = Field(
        None, gt=0, description="默认任务超时（秒），None 表示不超时"
    )
    cancel_grace_period_s: float = Field(
        5.0, ge=0, description="取消/超时后等待 Agent 确认的宽限期（秒）"
    )
    emit_lifecycle_events: bool = Field(
        False, description="是否发布非终态事件（queued/assigned/running）"
    )


class AgentRegistryConfig(BaseModel):
    """Agent 注册表配置"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    selection_policy: SelectionPolicy = Field(
        SelectionPolicy.ROUND_ROBIN, description="选择策略"
    )

    # CUSTOM 策略使用：(candidates, task) -> agent | None
    custom_selector: Optional[Callable[..., Any]] = Field(
        None, exclude=True, description="自定义选择函数"
    )


class HTTPClientConfig(BaseModel):
    """HTTP 客户端配置"""
    timeout: int = Field(60, description="请求超时（秒）")
    max_retries: int = Field(3, description="最大重试次数")
    retry_delay: float = Field(1.0, description="重试延迟（秒）")
    retry_backoff: float = Field(2.0, description="重试延迟指数退避")
    retry_statuses: List[int] = Field(
        default_factory=lambda: [429, 500, 502, 503, 504, 529],
        description="需要重试的 HTTP 状态码（限流 / 服务端过载）"
    )

    # 连接池
    max_connections: int = Field(100, description="最大连接数")
    keepalive_timeout: int = Field(30, description="Keep-alive 超时")


class LLMConfig(BaseModel):
    """LLM 服务配置"""
    openai_url: str = Field(
        "https://api.openai.com/v1/chat/completions",
        description="OpenAI Chat Completions 地址"
    )
    openai_model: str = Field("gpt-4o-mini", description="默认 OpenAI 模型")
    openai_api_key_env: str = Field("OPENAI_API_KEY", description="API Key 环境变量")

    anthropic_url: str = Field(
        "https://api.anthropic.com/v1/messages",
        description="Anthropic Messages 地址"
    )
    anthropic_model: str = Field(
        "claude-3-5-sonnet-20240620", description="默认 Anthropic 模型"
    )
    anthropic_version: str = Field("2023-06-01", description="anthropic-version 头")
    anthropic_api_key_env: str = Field(
        "ANTHROPIC_API_KEY", description="API Key 环境变量"
    )
    max_tokens: int = Field(1024, description="默认最大生成 token 数")


class SwarmConfig(BaseModel):
    """Swarm SDK 总配置"""
    service_name: str = Field("swarm-sdk", description="服务名称")

    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    registry: AgentRegistryConfig = Field(default_factory=AgentRegistryConfig)
    http: HTTPClientConfig = Field(default_factory=HTTPClientConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    @classmethod
    def from_env(cls) -> "SwarmConfig":
        """从环境变量加载配置"""
        max_queue_depth = os.getenv("SWARM_MAX_QUEUE_DEPTH")
        default_timeout = os.getenv("SWARM_DEFAULT_TIMEOUT_S")

        return cls(
            service_name=os.getenv("SWARM_SERVICE_NAME", "swarm-sdk"),
            dispatcher=DispatcherConfig(
                max_queue_depth=int(max_queue_depth) if max_queue_depth else None,
                default_timeout_s=float(default_timeout) if default_timeout else None,
                cancel_grace_period_s=float(
                    os.getenv("SWARM_CANCEL_GRACE_PERIOD_S", "5.0")
                ),
            ),
            registry=AgentRegistryConfig(
                selection_policy=os.getenv("SWARM_SELECTION_POLICY", "round_robin"),
            ),
        )
