"""Shared fixtures: settings, repositories for both backends, fake LLM."""

from collections.abc import Sequence

import pytest
import pytest_asyncio

from archivist.api.models import LLMReply, Message, ToolCallRequest, ToolDefinition
from archivist.config import Settings
from archivist.storage.database import Database
from archivist.storage.repository import InMemoryConversationRepository
from archivist.storage.sql import SqlConversationRepository

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a temp workspace and short timeouts."""
    return Settings(
        LLM_API_KEY="test-key",
        workspace_dir=str(tmp_path / "workspace"),
        tool_timeout=5.0,
        max_iterations=10,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def sql_db(settings, tmp_path):
    """File-backed SQLite database with the schema created."""
    database = Database(settings, url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.connect()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def repository(request, settings, tmp_path):
    """Every repository backend; contract tests run against each."""
    if request.param == "memory":
        yield InMemoryConversationRepository()
        return

    database = Database(settings, url=f"sqlite+aiosqlite:///{tmp_path / 'repo.db'}")
    await database.connect()
    yield SqlConversationRepository(database)
    await database.disconnect()


# ---------------------------------------------------------------------------
# Fake LLM
# ---------------------------------------------------------------------------


class ScriptedLLM:
    """LLMClient that replays queued replies and records every call.

    Each queued item is an LLMReply or an exception to raise. When the
    queue runs dry the default reply is returned.
    """

    def __init__(self, replies=None, default: LLMReply | None = None) -> None:
        self.replies = list(replies or [])
        self.default = default or LLMReply(content="ok")
        self.calls: list[dict] = []

    async def send(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMReply:
        self.calls.append({
            "system_prompt": system_prompt,
            "history": list(history),
            "tools": list(tools),
            "temperature": temperature,
        })
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


def tool_reply(*calls: tuple[str, str, str], content: str | None = None) -> LLMReply:
    """LLMReply requesting tools, from (id, name, arguments) tuples."""
    return LLMReply(
        content=content,
        tool_calls=[ToolCallRequest(id=i, name=n, arguments=a) for i, n, a in calls],
    )
