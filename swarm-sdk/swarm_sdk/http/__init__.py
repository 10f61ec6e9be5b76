"""
Swarm SDK - HTTP 模块

负责 LLM 等外部 API 调用（供 Agent 处理函数使用）。
"""

from .async_client import (
    AsyncHTTPClient,
    HTTPResponse,
    HTTPRequestError,
    LLMAPIClient,
    get_api_key,
)

__all__ = [
    "AsyncHTTPClient",
    "HTTPResponse",
    "HTTPRequestError",
    "LLMAPIClient",
    "get_api_key",
]
