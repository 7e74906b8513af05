"""Tool registry and executor for the agent tool loop.

Provides:
- Tool: the capability protocol every tool implements
- FunctionTool: adapts an async callable + ToolDefinition into a Tool
- ToolRegistry: catalogue of tools, manifest generation, contained execution
- ToolExecutor: runs a batch of model tool calls in request order

A tool body can never abort the orchestration loop: every failure mode
(unknown name, exception, timeout) comes back as result text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from typing import Any, Protocol, runtime_checkable

from archivist.api.models import (
    DEFAULT_TOOL_CALL_TYPE,
    ToolCallRequest,
    ToolDefinition,
    ToolRunResult,
)

logger = logging.getLogger(__name__)


def tool_not_found_message(name: str) -> str:
    return f"Error: tool '{name}' not found"


def tool_error_message(name: str, details: str) -> str:
    return f"Tool execution error: {name}: {details}"


# ---------------------------------------------------------------------------
# Tool protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """A named capability the model can invoke."""

    @property
    def definition(self) -> ToolDefinition: ...

    @property
    def name(self) -> str: ...

    async def execute(self, arguments: str) -> str: ...


class FunctionTool:
    """Wraps an async handler as a Tool.

    The handler receives the decoded JSON arguments as **kwargs and returns
    the result text. Invalid JSON raises ValueError, which the registry turns
    into a tool execution error.
    """

    def __init__(
        self,
        definition: ToolDefinition,
        handler: Callable[..., Awaitable[str]],
    ) -> None:
        self._definition = definition
        self._handler = handler

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    @property
    def name(self) -> str:
        return self._definition.name

    async def execute(self, arguments: str) -> str:
        args = decode_arguments(arguments)
        return await self._handler(**args)

    def __repr__(self) -> str:
        return f"FunctionTool({self.name!r})"


def decode_arguments(arguments: str | None) -> dict[str, Any]:
    """Decode a tool-call argument payload into a kwargs dict."""
    if not arguments or not arguments.strip():
        return {}
    try:
        decoded = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON arguments: {e}") from e
    if not isinstance(decoded, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(decoded).__name__}")
    return decoded


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Catalogue of tools keyed by name.

    Owned by the composition root and passed to the runner by reference.
    Mutations are serialized with a lock; lookups are plain dict reads, so
    they never wait on more than a single insert or remove.

    The registry fills itself from ``builtin_loader`` on first use. reset()
    clears everything and re-arms that lazy initialization.
    """

    def __init__(
        self,
        builtin_loader: Callable[[], Iterable[Tool]] | None = None,
        tool_timeout: float | None = None,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._initialized = False
        self._builtin_loader = builtin_loader
        self._tool_timeout = tool_timeout

    def initialize(self) -> None:
        """Register built-in tools. Idempotent."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            if self._builtin_loader is not None:
                for tool in self._builtin_loader():
                    self._register(tool, source="built-in")
            self._initialized = True
        logger.info(
            "ToolRegistry initialized with %d tools: %s",
            len(self._tools),
            sorted(self._tools),
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    def register(self, tool: Tool) -> bool:
        """Register a tool. The first registration of a name wins."""
        self._ensure_initialized()
        return self._register(tool, source="manual")

    def register_function(
        self,
        definition: ToolDefinition,
        handler: Callable[..., Awaitable[str]],
    ) -> bool:
        """Register an async handler under ``definition``."""
        return self.register(FunctionTool(definition, handler))

    def register_all(self, tools: Iterable[Tool]) -> int:
        """Register several tools, returning how many were inserted."""
        return sum(1 for tool in tools if self.register(tool))

    def _register(self, tool: Tool, source: str) -> bool:
        with self._lock:
            if tool.name in self._tools:
                logger.warning(
                    "Tool '%s' already registered, ignoring %s registration",
                    tool.name,
                    source,
                )
                return False
            self._tools[tool.name] = tool
        logger.debug("Registered tool '%s' (%s)", tool.name, source)
        return True

    def unregister(self, name: str) -> Tool | None:
        self._ensure_initialized()
        with self._lock:
            tool = self._tools.pop(name, None)
        if tool is not None:
            logger.debug("Unregistered tool '%s'", name)
        return tool

    def get_tool(self, name: str) -> Tool | None:
        self._ensure_initialized()
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        self._ensure_initialized()
        return name in self._tools

    def get_tool_names(self) -> set[str]:
        self._ensure_initialized()
        return set(self._tools)

    def size(self) -> int:
        self._ensure_initialized()
        return len(self._tools)

    def get_all_tools(self) -> list[ToolDefinition]:
        """Return the manifest advertised to the model."""
        self._ensure_initialized()
        return [tool.definition for tool in list(self._tools.values())]

    def tool_schemas(self) -> list[dict[str, Any]]:
        """Return all tool definitions in function-calling wire format."""
        return [definition.to_schema() for definition in self.get_all_tools()]

    async def dispatch(
        self,
        name: str,
        arguments: str,
        timeout: float | None = None,
    ) -> tuple[str, bool]:
        """Execute a tool. Returns (result_text, is_error); never raises."""
        tool = self.get_tool(name)
        if tool is None:
            logger.warning("Tool '%s' not found", name)
            return tool_not_found_message(name), True

        effective_timeout = timeout if timeout is not None else self._tool_timeout
        try:
            if effective_timeout:
                result = await asyncio.wait_for(tool.execute(arguments), timeout=effective_timeout)
            else:
                result = await tool.execute(arguments)
        except asyncio.TimeoutError:
            logger.error("Tool '%s' timed out after %ss", name, effective_timeout)
            return tool_error_message(name, f"timed out after {effective_timeout}s"), True
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            return tool_error_message(name, str(e) or type(e).__name__), True
        return result, False

    async def execute_tool(
        self,
        name: str,
        arguments: str,
        timeout: float | None = None,
    ) -> str:
        """Execute a tool and return its result text. Never raises."""
        result, _ = await self.dispatch(name, arguments, timeout=timeout)
        return result

    def reset(self) -> None:
        """Drop all tools and re-arm lazy initialization (for tests)."""
        with self._init_lock, self._lock:
            self._tools.clear()
            self._initialized = False
        logger.debug("ToolRegistry reset")


# ---------------------------------------------------------------------------
# ToolExecutor
# ---------------------------------------------------------------------------


class ToolExecutor:
    """Runs the tool calls of one model turn against a registry.

    Calls execute sequentially so the transcript is reproducible:
    result order always equals request order.
    """

    def __init__(self, registry: ToolRegistry, timeout: float | None = None) -> None:
        self._registry = registry
        self._timeout = timeout

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @staticmethod
    def normalize(tool_calls: Iterable[ToolCallRequest]) -> list[ToolCallRequest]:
        """Fill in a missing type tag (some providers send null)."""
        return [
            tc if tc.type else replace(tc, type=DEFAULT_TOOL_CALL_TYPE)
            for tc in tool_calls
        ]

    async def execute_tool_call(
        self,
        tool_call: ToolCallRequest,
        conversation_id: str | None = None,
    ) -> ToolRunResult:
        logger.info(
            "Tool call %s(%s) [conversation=%s]",
            tool_call.name,
            tool_call.arguments[:200],
            conversation_id,
        )
        start_time = time.monotonic()
        result_text, is_error = await self._registry.dispatch(
            tool_call.name, tool_call.arguments, timeout=self._timeout
        )
        duration_ms = int((time.monotonic() - start_time) * 1000)

        if is_error:
            logger.warning("Tool %s failed in %d ms: %s", tool_call.name, duration_ms, result_text)
        else:
            logger.info(
                "Tool %s returned %d chars in %d ms",
                tool_call.name,
                len(result_text),
                duration_ms,
            )

        return ToolRunResult(
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            arguments=tool_call.arguments,
            result=result_text,
            is_error=is_error,
            duration_ms=duration_ms,
        )

    async def execute_tool_calls(
        self,
        tool_calls: Iterable[ToolCallRequest],
        conversation_id: str | None = None,
    ) -> list[ToolRunResult]:
        """Execute tool calls one after another, preserving order."""
        results = []
        for tool_call in self.normalize(tool_calls):
            results.append(await self.execute_tool_call(tool_call, conversation_id))
        return results

    async def execute_parallel(
        self,
        tool_calls: Iterable[ToolCallRequest],
        conversation_id: str | None = None,
    ) -> list[ToolRunResult]:
        """Execute tool calls concurrently. Results keep request order."""
        tasks = [
            self.execute_tool_call(tc, conversation_id) for tc in self.normalize(tool_calls)
        ]
        return list(await asyncio.gather(*tasks))
