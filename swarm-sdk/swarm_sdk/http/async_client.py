"""
Swarm SDK - 异步 HTTP 客户端

LLM Agent 通过这里访问 OpenAI / Anthropic；编排器本身不做网络通信。
"""

import asyncio
import json
import logging
import os
from typing import Optional, Dict, Any, List

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector

from shared.models import (
    AnthropicRequest,
    AnthropicResponse,
    ChatCompletionResult,
    ChatMessage,
    MessageRole,
)

from ..config import HTTPClientConfig, LLMConfig

logger = logging.getLogger(__name__)


class HTTPRequestError(Exception):
    """HTTP 请求错误（连接失败、重试耗尽或错误状态码）"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class HTTPResponse:
    """已读取完毕的 HTTP 响应"""

    def __init__(self, status: int, headers: Dict[str, str], body: bytes):
        self.status = status
        self.headers = headers
        self.body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body)

    def raise_for_status(self, service: str = "HTTP"):
        if not self.ok:
            raise HTTPRequestError(f"{service} API error: {self.status}", status=self.status)


class AsyncHTTPClient:
    """异步 HTTP 客户端

    负责：
    - 连接池（首次 connect 时创建，disconnect 时关闭）
    - 连接错误与限流 / 过载状态码的指数退避重试

    Usage:
        async with AsyncHTTPClient(config) as client:
            response = await client.post(url, json=body)
    """

    def __init__(self, config: Optional[HTTPClientConfig] = None):
        self.config = config or HTTPClientConfig()
        self._session: Optional[ClientSession] = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("HTTP client not connected. Call connect() first.")
        return self._session

    async def connect(self):
        if self._session is not None:
            return

        self._session = ClientSession(
            connector=TCPConnector(
                limit=self.config.max_connections,
                keepalive_timeout=self.config.keepalive_timeout
            ),
            timeout=ClientTimeout(total=self.config.timeout)
        )
        logger.info(f"HTTP client connected (pool size {self.config.max_connections})")

    async def disconnect(self):
        if self._session is None:
            return

        session, self._session = self._session, None
        await session.close()
        logger.info("HTTP client disconnected")

    def _retry_delay(self, attempt: int) -> float:
        return self.config.retry_delay * (self.config.retry_backoff ** attempt)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        retry: bool = True
    ) -> HTTPResponse:
        """发送请求并读取完整响应体

        连接错误、超时和 retry_statuses 中的状态码会按指数退避重试；
        其他错误状态码直接返回，由调用方 raise_for_status()。

        Raises:
            HTTPRequestError: 重试耗尽仍然连接失败
        """
        attempts = self.config.max_retries if retry else 1
        request_timeout = ClientTimeout(total=timeout) if timeout else None
        response: Optional[HTTPResponse] = None
        last_error: Optional[BaseException] = None

        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(self._retry_delay(attempt - 1))

            try:
                async with self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json,
                    timeout=request_timeout
                ) as raw:
                    response = HTTPResponse(
                        status=raw.status,
                        headers=dict(raw.headers),
                        body=await raw.read()
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(f"{method} {url} failed (attempt {attempt + 1}/{attempts}): {e!r}")
                continue

            if response.status not in self.config.retry_statuses:
                return response
            logger.warning(
                f"{method} {url} returned {response.status} (attempt {attempt + 1}/{attempts})"
            )

        if response is not None:
            return response
        raise HTTPRequestError(f"{method} {url} failed after {attempts} attempts: {last_error!r}")

    async def post(self, url: str, **kwargs) -> HTTPResponse:
        return await self.request("POST", url, **kwargs)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()


def get_api_key(env_var: str) -> str:
    """从环境变量读取 API Key

    Raises:
        HTTPRequestError: 环境变量未设置
    """
    api_key = os.getenv(env_var)
    if not api_key:
        logger.error(f"API key not found in environment variable {env_var}")
        raise HTTPRequestError(f"API key not found in environment variable {env_var}")
    logger.debug(f"API key found in environment ({env_var})")
    return api_key


class LLMAPIClient:
    """LLM API 客户端（OpenAI Chat Completions / Anthropic Messages）"""

    def __init__(self, http_client: AsyncHTTPClient, config: Optional[LLMConfig] = None):
        self.http = http_client
        self.config = config or LLMConfig()

    async def call_openai_chat(
        self,
        user_task: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        history: Optional[List[ChatMessage]] = None
    ) -> ChatCompletionResult:
        """调用 OpenAI Chat Completions

        Args:
            user_task: 用户消息
            system_prompt: 系统提示
            model: 模型名称，默认使用配置
            history: 插在系统提示和用户消息之间的历史消息
        """
        api_key = get_api_key(self.config.openai_api_key_env)

        messages: List[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(role=MessageRole.SYSTEM, content=system_prompt))
        messages.extend(history or [])
        messages.append(ChatMessage(role=MessageRole.USER, content=user_task))

        response = await self.http.post(
            url=self.config.openai_url,
            headers={"Authorization": f"Bearer {api_key}"},
            json={
                "model": model or self.config.openai_model,
                "messages": [m.model_dump() for m in messages],
            }
        )
        response.raise_for_status("OpenAI")

        result = ChatCompletionResult.from_response(response.json())
        logger.debug(
            f"OpenAI usage: input={result.usage.input_tokens} output={result.usage.output_tokens}"
        )
        return result

    async def call_anthropic_messages(self, request: AnthropicRequest) -> AnthropicResponse:
        """调用 Anthropic Messages API"""
        api_key = get_api_key(self.config.anthropic_api_key_env)

        response = await self.http.post(
            url=self.config.anthropic_url,
            headers={
                "x-api-key": api_key,
                "anthropic-version": self.config.anthropic_version,
            },
            json=request.to_payload()
        )
        logger.info(f"Anthropic API call finished, status: {response.status}")
        response.raise_for_status("Anthropic")

        parsed = AnthropicResponse(**response.json())
        logger.info(f"Input tokens used: {parsed.usage.input_tokens}")
        logger.info(f"Output tokens generated: {parsed.usage.output_tokens}")
        return parsed
