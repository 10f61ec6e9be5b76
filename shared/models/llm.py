"""
共享数据模型 - LLM 请求与响应
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Any, Dict
from enum import Enum


class MessageRole(str, Enum):
    """消息角色"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    """对话消息"""
    role: MessageRole
    content: Any  # 字符串或内容块列表

    model_config = ConfigDict(use_enum_values=True)


class LLMUsage(BaseModel):
    """Token 用量"""
    input_tokens: int = 0
    output_tokens: int = 0


class AnthropicRequest(BaseModel):
    """Anthropic Messages API 请求体"""
    model: str
    max_tokens: int = Field(1024, description="最大生成 token 数")
    messages: List[ChatMessage]
    system: Optional[str] = None
    stop_sequences: Optional[List[str]] = None
    temperature: Optional[float] = Field(None, ge=0, le=1)
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    stream: Optional[bool] = None
    metadata: Optional[Dict[str, str]] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Any] = None

    def to_payload(self) -> Dict[str, Any]:
        """序列化为请求 JSON（省略空字段）"""
        return self.model_dump(exclude_none=True)


class AnthropicResponse(BaseModel):
    """Anthropic Messages API 响应体"""
    id: str
    model: str
    role: str
    type: str
    content: List[Dict[str, Any]] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: LLMUsage = Field(default_factory=LLMUsage)

    @property
    def text(self) -> str:
        """拼接所有 text 内容块"""
        return "".join(
            block.get("text", "") for block in self.content
            if block.get("type", "text") == "text"
        )


class ChatCompletionResult(BaseModel):
    """OpenAI Chat Completions 结果（精简）"""
    id: Optional[str] = None
    model: Optional[str] = None
    text: str = ""
    finish_reason: Optional[str] = None
    usage: LLMUsage = Field(default_factory=LLMUsage)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "ChatCompletionResult":
        choices = data.get("choices") or [{}]
        first = choices[0]
        usage = data.get("usage") or {}
        return cls(
            id=data.get("id"),
            model=data.get("model"),
            text=(first.get("message") or {}).get("content") or "",
            finish_reason=first.get("finish_reason"),
            usage=LLMUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
            raw=data,
        )
