"""LLM client for OpenAI-compatible chat-completions endpoints.

The orchestrator and the compressor only see the LLMClient protocol;
ChatCompletionsClient is the httpx implementation (DeepSeek by default).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from archivist.api.models import SYSTEM, LLMReply, Message, ToolCallRequest, ToolDefinition
from archivist.config import Settings

logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 502, 503, 529)
_MAX_RETRY_AFTER = 30.0


class LLMError(RuntimeError):
    """Base class for model provider failures."""


class LLMApiError(LLMError):
    """Provider answered with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"LLM API error ({status_code}): {message}")
        self.status_code = status_code


class LLMTimeoutError(LLMError):
    """Request did not complete within the configured timeouts."""


class LLMParseError(LLMError):
    """Provider response could not be interpreted."""


class LLMClient(Protocol):
    async def send(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMReply: ...


def build_messages(system_prompt: str, history: Sequence[Message]) -> list[dict[str, Any]]:
    """Wire messages for one request.

    ``system_prompt`` is always sent first. A leading system message in the
    history is skipped since it carries the same (stored) prompt.
    """
    messages: list[dict[str, Any]] = [{"role": SYSTEM, "content": system_prompt}]
    start = 1 if history and history[0].role == SYSTEM else 0
    messages.extend(message.to_dict() for message in history[start:])
    return messages


def parse_reply(data: dict[str, Any]) -> LLMReply:
    """Parse a chat-completions response body into an LLMReply."""
    try:
        message = data["choices"][0]["message"]
        tool_calls = [ToolCallRequest.from_dict(tc) for tc in message.get("tool_calls") or []]
    except (KeyError, IndexError, TypeError) as e:
        raise LLMParseError(f"Malformed completion response: {e!r}") from e
    return LLMReply(
        content=message.get("content"),
        tool_calls=tool_calls,
        usage=data.get("usage"),
    )


class ChatCompletionsClient:
    """httpx client for ``POST {base_url}/chat/completions``."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.llm_api_key:
            headers["authorization"] = f"Bearer {settings.llm_api_key}"
        else:
            logger.warning("LLM_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.llm_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info("LLM client initialized (%s, model=%s)", settings.llm_base_url, settings.model)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tools: Sequence[ToolDefinition],
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "messages": build_messages(system_prompt, history),
        }
        if tools:
            payload["tools"] = [tool.to_schema() for tool in tools]
        if temperature is None:
            temperature = self._settings.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    async def send(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMReply:
        """Send one completion request, retrying once on 429/5xx or timeout.

        Raises LLMError subclasses on persistent failure.
        """
        if not self._http:
            raise LLMError("httpx client not initialized -- call start() first")

        payload = self._build_payload(system_prompt, history, tools, temperature, max_tokens)
        logger.debug(
            "LLM request: %d messages, %d tools", len(payload["messages"]), len(tools)
        )

        last_error: LLMError | None = None
        for attempt in range(2):
            start = time.monotonic()
            try:
                response = await self._http.post("/chat/completions", json=payload)
            except httpx.TimeoutException as e:
                last_error = LLMTimeoutError(f"LLM request timed out: {e}")
                if attempt == 0:
                    logger.warning("LLM timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
                break
            except httpx.HTTPError as e:
                last_error = LLMError(f"HTTP error: {e}")
                break

            if response.status_code == 200:
                try:
                    data = response.json()
                except ValueError as e:
                    raise LLMParseError(f"Invalid JSON in completion response: {e}") from e
                reply = parse_reply(data)
                logger.info(
                    "LLM reply in %.0f ms: %d chars, %d tool calls",
                    (time.monotonic() - start) * 1000,
                    len(reply.content or ""),
                    len(reply.tool_calls),
                )
                return reply

            error_msg = _error_message(response)
            if response.status_code in _RETRY_STATUSES and attempt == 0:
                retry_after = _retry_after(response)
                logger.warning(
                    "LLM API error %d, retrying in %.1fs: %s",
                    response.status_code,
                    retry_after,
                    error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            last_error = LLMApiError(response.status_code, error_msg)
            break

        logger.error("LLM call failed: %s", last_error)
        raise last_error or LLMError("LLM call failed with unknown error")


def _error_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error")
    except ValueError:
        error = None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return f"HTTP {response.status_code}: {response.text[:500]}"


def _retry_after(response: httpx.Response) -> float:
    try:
        value = float(response.headers.get("retry-after", "1"))
    except ValueError:
        value = 1.0
    return min(max(value, 0.0), _MAX_RETRY_AFTER)
