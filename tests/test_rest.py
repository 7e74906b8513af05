"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport against a real AgentRunner wired
to the in-memory repository and a ScriptedLLM.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from archivist.api.compaction import HistoryCompressor
from archivist.api.llm import LLMApiError
from archivist.api.models import LLMReply, Message, ToolDefinition, ToolParameter
from archivist.api.rest import create_app
from archivist.api.runner import AgentRunner
from archivist.api.schemas import CompressionSettings
from archivist.api.tools import ToolRegistry
from archivist.storage.repository import InMemoryConversationRepository
from tests.conftest import ScriptedLLM, tool_reply

pytestmark = pytest.mark.asyncio

ECHO = ToolDefinition(
    name="echo",
    description="Echo the text back",
    parameters=(ToolParameter("text", "string", "Text to echo", required=True),),
)


async def _echo(text: str) -> str:
    return f"echo: {text}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def registry():
    r = ToolRegistry()
    r.register_function(ECHO, _echo)
    return r


@pytest.fixture
def repository():
    return InMemoryConversationRepository()


@pytest.fixture
def compressor(llm, settings):
    return HistoryCompressor(llm, settings)


@pytest.fixture
def runner(repository, registry, llm, settings, compressor):
    return AgentRunner(repository, registry, llm, settings, compressor=compressor)


@pytest.fixture
def app(runner, registry, settings, compressor):
    return create_app(runner, registry, settings, compressor=compressor)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client using httpx ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# POST /chat
# ---------------------------------------------------------------------------


async def test_chat_basic(client, llm):
    """POST /chat -> 200 with the assistant message and a fresh id."""
    llm.replies = [LLMReply(content="Hello, traveller")]

    resp = await client.post("/chat", json={"message": "Hello!"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["message"] == {"role": "assistant", "content": "Hello, traveller"}
    assert data["conversation_id"]
    assert data["iterations"] == 1
    assert data["iterations_exhausted"] is False
    assert data["tool_calls"] == []
    assert "compression" not in data


async def test_chat_reuses_conversation(client, llm):
    await client.post("/chat", json={"message": "first", "conversation_id": "c1"})
    resp = await client.post("/chat", json={"message": "second", "conversation_id": "c1"})

    assert resp.json()["conversation_id"] == "c1"
    user_turns = [m.content for m in llm.calls[-1]["history"] if m.role == "user"]
    assert user_turns == ["first", "second"]


async def test_chat_with_tool_calls(client, llm):
    llm.replies = [
        tool_reply(("call_1", "echo", '{"text": "ping"}')),
        LLMReply(content="done"),
    ]

    resp = await client.post("/chat", json={"message": "use echo", "conversation_id": "t1"})

    data = resp.json()
    assert resp.status_code == 200
    assert data["message"]["content"] == "done"
    assert data["iterations"] == 2
    assert len(data["tool_calls"]) == 1
    call = data["tool_calls"][0]
    assert call["id"] == "call_1"
    assert call["name"] == "echo"
    assert call["is_error"] is False
    assert isinstance(call["duration_ms"], int)


async def test_chat_response_format_reaches_prompt(client, llm):
    await client.post("/chat", json={"message": "hi", "response_format": "markdown"})

    assert "Markdown" in llm.calls[0]["system_prompt"]


async def test_chat_temperature_reaches_model(client, llm):
    resp = await client.post("/chat", json={"message": "hi", "temperature": 0.7})

    assert resp.status_code == 200
    assert llm.calls[0]["temperature"] == 0.7


async def test_chat_temperature_out_of_range(client, llm):
    resp = await client.post("/chat", json={"message": "hi", "temperature": 5})

    assert resp.status_code == 400
    assert llm.calls == []


async def test_chat_missing_message(client):
    resp = await client.post("/chat", json={"conversation_id": "c1"})

    assert resp.status_code == 400
    data = resp.json()
    assert data["error"] == "Invalid request"
    assert data["details"][0]["loc"] == ["message"]


async def test_chat_empty_message(client):
    resp = await client.post("/chat", json={"message": ""})
    assert resp.status_code == 400


async def test_chat_bad_response_format(client):
    resp = await client.post("/chat", json={"message": "hi", "response_format": "yaml"})
    assert resp.status_code == 400


async def test_chat_invalid_json(client):
    resp = await client.post(
        "/chat", content=b"{not json", headers={"content-type": "application/json"}
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid JSON body"


async def test_chat_llm_error_is_502(client, llm):
    llm.replies = [LLMApiError(401, "bad key")]

    resp = await client.post("/chat", json={"message": "hi"})

    assert resp.status_code == 502
    assert "bad key" in resp.json()["error"]


async def test_chat_unexpected_error_is_500(client, llm):
    llm.replies = [RuntimeError("kaboom")]

    resp = await client.post("/chat", json={"message": "hi"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "kaboom"


async def test_chat_reports_compression(client, llm, repository):
    history = [Message.system("S")]
    for i in range(6):
        history += [Message.user(f"q{i}"), Message.assistant(f"a{i}")]
    await repository.add_messages("long", history)
    llm.replies = [LLMReply(content="short summary"), LLMReply(content="answer")]

    resp = await client.post("/chat", json={
        "message": "next",
        "conversation_id": "long",
        "compression_settings": {"enabled": True, "message_threshold": 10, "keep_recent_messages": 4},
    })

    data = resp.json()
    assert resp.status_code == 200
    assert data["compression"]["compressed"] is True
    assert data["compression"]["original_count"] == 13
    assert data["compression"]["summary"] == "short summary"


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


async def test_list_conversations(client):
    await client.post("/chat", json={"message": "one", "conversation_id": "a"})
    await client.post("/chat", json={"message": "two", "conversation_id": "b"})

    resp = await client.get("/conversations")

    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert {c["id"] for c in data["conversations"]} == {"a", "b"}
    for conversation in data["conversations"]:
        assert conversation["message_count"] == 3


async def test_list_conversations_empty(client):
    resp = await client.get("/conversations")
    assert resp.json() == {"conversations": [], "total": 0}


async def test_history(client):
    await client.post("/chat", json={"message": "hello", "conversation_id": "h1"})

    resp = await client.get("/conversations/h1/history")

    assert resp.status_code == 200
    data = resp.json()
    assert data["conversation_id"] == "h1"
    assert [m["role"] for m in data["messages"]] == ["system", "user", "assistant"]
    assert data["messages"][1]["content"] == "hello"


async def test_history_not_found(client):
    resp = await client.get("/conversations/missing/history")
    assert resp.status_code == 404


async def test_delete_conversation(client, repository):
    await client.post("/chat", json={"message": "hello", "conversation_id": "d1"})

    resp = await client.delete("/conversations/d1")

    assert resp.status_code == 200
    assert resp.json() == {"status": "deleted", "conversation_id": "d1"}
    assert await repository.get_history("d1") == []

    again = await client.delete("/conversations/d1")
    assert again.status_code == 404


async def test_compression_stats_default(client):
    resp = await client.get("/conversations/nothing/compression")

    assert resp.status_code == 200
    assert resp.json() == {
        "conversation_id": "nothing",
        "total_compressions": 0,
        "total_tokens_saved": 0,
        "current_summary": None,
    }


async def test_compression_stats_after_compress(client, compressor, repository):
    history = [Message.user(f"message number {i} " * 5) for i in range(12)]
    await repository.add_messages("s1", history)
    await compressor.compress_conversation(
        repository, "s1", CompressionSettings(enabled=True, message_threshold=5, keep_recent_messages=2)
    )

    resp = await client.get("/conversations/s1/compression")

    data = resp.json()
    assert data["total_compressions"] == 1
    assert data["total_tokens_saved"] > 0
    assert data["current_summary"] == "ok"


# ---------------------------------------------------------------------------
# Tools and health
# ---------------------------------------------------------------------------


async def test_list_tools(client):
    resp = await client.get("/tools")

    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 1
    function = data["tools"][0]["function"]
    assert function["name"] == "echo"
    assert function["parameters"]["required"] == ["text"]


async def test_health_without_database(client, settings):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "storage": settings.storage_backend}


async def test_health_with_database(runner, registry, settings, sql_db):
    app = create_app(runner, registry, settings, database=sql_db)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
