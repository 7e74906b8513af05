"""Built-in tools: get_current_time, bash, read_file.

bash and read_file are confined to the workspace directory. Handlers raise
on failure; the registry turns exceptions into tool execution errors.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from archivist.api.models import ToolDefinition, ToolParameter
from archivist.api.tools import FunctionTool
from archivist.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB

_RELATIVE_OFFSETS = (
    ("In 1 minute", timedelta(minutes=1)),
    ("In 5 minutes", timedelta(minutes=5)),
    ("In 1 hour", timedelta(hours=1)),
    ("In 1 day", timedelta(days=1)),
    ("In 1 week", timedelta(weeks=1)),
)


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve ``path_str`` and reject anything outside the workspace."""
    workspace = Path(workspace_dir).resolve()
    path = Path(path_str)
    target = path.resolve() if path.is_absolute() else (workspace / path).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(f"Path '{path_str}' is outside workspace '{workspace_dir}'")
    return target


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def current_time_tool(timezone: str = "UTC") -> str:
    """Current date and time, plus a few precomputed relative timestamps."""
    if timezone.upper() == "UTC":
        tz = UTC
    else:
        try:
            tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {timezone}") from e

    now = datetime.now(UTC).astimezone(tz)
    lines = [
        f"Current time ({timezone}):",
        f"ISO-8601: {now.isoformat(timespec='seconds')}",
        f"Readable: {now.strftime('%d.%m.%Y %H:%M:%S')}",
        "",
        "For relative times:",
    ]
    lines.extend(
        f"  {label}: {(now + delta).isoformat(timespec='seconds')}"
        for label, delta in _RELATIVE_OFFSETS
    )
    return "\n".join(lines)


async def bash_tool(command: str, timeout: int = 30, *, _workspace_dir: str) -> str:
    """Execute a shell command in the workspace directory.

    Args:
        command: Shell command to execute
        timeout: Timeout in seconds (default 30, max 300)
        _workspace_dir: Bound at registration
    """
    effective_timeout = max(1, min(int(timeout), _MAX_BASH_TIMEOUT))

    workspace = Path(_workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return f"Command timed out after {effective_timeout}s.\nCommand: {command}"

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    return "\n".join(parts) if parts else "(no output)"


async def read_file_tool(
    path: str,
    offset: int = 0,
    limit: int = 0,
    *,
    _workspace_dir: str,
) -> str:
    """Read a file from the workspace directory.

    Args:
        path: File path (relative to workspace or absolute within workspace)
        offset: Line offset to start reading from (0-indexed)
        limit: Number of lines to read (0 = all)
        _workspace_dir: Bound at registration
    """
    target = _validate_path(path, _workspace_dir)

    if not target.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not target.is_file():
        raise ValueError(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        raise ValueError(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)"
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)

    return content if content else "(empty file)"


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

CURRENT_TIME_DEFINITION = ToolDefinition(
    name="get_current_time",
    description=(
        "Get the current date and time in ISO-8601. Use it to work out relative "
        "times such as 'in N minutes', 'tomorrow' or 'next week'."
    ),
    parameters=(
        ToolParameter(
            name="timezone",
            type="string",
            description="IANA timezone name, e.g. 'Europe/Moscow' (default UTC)",
        ),
    ),
)

BASH_DEFINITION = ToolDefinition(
    name="bash",
    description=(
        "Execute a shell command in the workspace directory. Returns stdout, "
        "stderr and the exit code. Output is truncated at 100KB."
    ),
    parameters=(
        ToolParameter(name="command", type="string", description="Shell command to execute", required=True),
        ToolParameter(name="timeout", type="integer", description="Timeout in seconds (default 30, max 300)"),
    ),
)

READ_FILE_DEFINITION = ToolDefinition(
    name="read_file",
    description=(
        "Read a text file from the workspace directory. Paths are relative to "
        "the workspace; use offset/limit for large files."
    ),
    parameters=(
        ToolParameter(name="path", type="string", description="File path", required=True),
        ToolParameter(name="offset", type="integer", description="Line offset to start from (0-indexed)"),
        ToolParameter(name="limit", type="integer", description="Number of lines to read (0 = all)"),
    ),
)


def load_builtin_tools(settings: Settings) -> list[FunctionTool]:
    """Built-in tools with the workspace directory bound from settings."""
    workspace_dir = settings.workspace_dir
    return [
        FunctionTool(CURRENT_TIME_DEFINITION, current_time_tool),
        FunctionTool(BASH_DEFINITION, partial(bash_tool, _workspace_dir=workspace_dir)),
        FunctionTool(READ_FILE_DEFINITION, partial(read_file_tool, _workspace_dir=workspace_dir)),
    ]
