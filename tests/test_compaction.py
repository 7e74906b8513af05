"""Tests for HistoryCompressor: policy, splicing, fallback and stats."""

import pytest

from archivist.api.compaction import (
    SUMMARY_HEADER,
    SUMMARY_SYSTEM_PROMPT,
    HistoryCompressor,
    estimate_tokens_saved,
    fallback_summary,
)
from archivist.api.llm import LLMApiError
from archivist.api.models import LLMReply, Message, ToolCallRequest
from archivist.api.schemas import CompressionSettings
from archivist.storage.repository import InMemoryConversationRepository
from tests.conftest import ScriptedLLM

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _history(n_others: int) -> list[Message]:
    """System message followed by alternating user/assistant messages."""
    messages = [Message.system("You are a historian.")]
    for i in range(n_others):
        if i % 2 == 0:
            messages.append(Message.user(f"question {i} " + "x" * 200))
        else:
            messages.append(Message.assistant(f"answer {i} " + "y" * 200))
    return messages


ENABLED = CompressionSettings(enabled=True, message_threshold=10, keep_recent_messages=4)


@pytest.fixture
def llm():
    return ScriptedLLM(default=LLMReply(content="Summary of the earlier conversation:\n- talked"))


@pytest.fixture
def compressor(llm, settings):
    return HistoryCompressor(llm, settings)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestNeedsCompression:
    def test_disabled(self, compressor):
        settings = CompressionSettings(enabled=False, message_threshold=2, keep_recent_messages=1)
        assert not compressor.needs_compression(_history(11), settings)

    def test_at_threshold(self, compressor):
        assert not compressor.needs_compression(_history(9), ENABLED)  # 10 messages

    def test_over_threshold(self, compressor):
        assert compressor.needs_compression(_history(10), ENABLED)  # 11 messages

    def test_keep_covers_everything(self, compressor):
        settings = CompressionSettings(enabled=True, message_threshold=3, keep_recent_messages=4)
        # 5 messages: keep (4) >= len - 1 (4)
        assert not compressor.needs_compression(_history(4), settings)


# ---------------------------------------------------------------------------
# compress()
# ---------------------------------------------------------------------------


class TestCompress:
    @pytest.mark.asyncio
    async def test_twelve_messages_become_six(self, compressor):
        history = _history(11)
        assert len(history) == 12

        compressed, outcome = await compressor.compress("c1", history, ENABLED)

        assert len(compressed) == 6
        assert compressed[0] == history[0]
        assert compressed[1].role == "assistant"
        assert compressed[1].content == outcome.summary
        assert compressed[2:] == history[-4:]
        assert outcome.compressed
        assert outcome.original_count == 12
        assert outcome.compressed_count == 6

    @pytest.mark.asyncio
    async def test_summary_request_excludes_system_message(self, compressor, llm):
        history = _history(11)
        await compressor.compress("c1", history, ENABLED)

        call = llm.calls[0]
        assert call["system_prompt"] == SUMMARY_SYSTEM_PROMPT
        request_text = call["history"][0].content
        assert "You are a historian." not in request_text
        assert "question 0" in request_text
        # Tail messages are not summarized
        assert "question 10" not in request_text
        assert call["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_tokens_saved_estimate(self, compressor):
        history = _history(11)
        _, outcome = await compressor.compress("c1", history, ENABLED)

        head = history[1:8]
        expected = (sum(len(m.content) for m in head) - len(outcome.summary)) // 4
        assert outcome.estimated_tokens_saved == expected
        assert expected > 0

    @pytest.mark.asyncio
    async def test_no_op_returns_history_unchanged(self, compressor, llm):
        history = _history(5)
        compressed, outcome = await compressor.compress("c1", history, ENABLED)

        assert compressed == history
        assert not outcome.compressed
        assert outcome.original_count == outcome.compressed_count == 6
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_fallback_summary_on_llm_failure(self, settings):
        llm = ScriptedLLM(replies=[LLMApiError(500, "down")])
        compressor = HistoryCompressor(llm, settings)
        history = _history(11)

        compressed, outcome = await compressor.compress("c1", history, ENABLED)

        assert outcome.compressed
        assert outcome.summary.startswith(SUMMARY_HEADER)
        assert "7 earlier messages" in outcome.summary
        assert len(compressed) == 6

    @pytest.mark.asyncio
    async def test_empty_summary_falls_back(self, settings):
        compressor = HistoryCompressor(ScriptedLLM(replies=[LLMReply(content="  ")]), settings)
        _, outcome = await compressor.compress("c1", _history(11), ENABLED)
        assert outcome.summary.startswith(SUMMARY_HEADER)

    @pytest.mark.asyncio
    async def test_tail_never_starts_with_tool_result(self, compressor):
        call = ToolCallRequest(id="call_1", name="echo", arguments="{}")
        history = _history(7) + [
            Message.assistant(None, [call]),
            Message.tool("call_1", "result"),
            Message.assistant("after tool"),
            Message.user("more"),
            Message.assistant("final"),
        ]
        # 13 messages; keep 4 would start the tail at the tool result
        assert history[-4].role == "tool"

        compressed, outcome = await compressor.compress("c1", history, ENABLED)

        assert outcome.compressed
        tail = compressed[2:]
        assert tail[0].role == "assistant"
        assert tail[0].tool_calls == (call,)
        assert tail == history[-5:]


# ---------------------------------------------------------------------------
# compress_conversation() and stats
# ---------------------------------------------------------------------------


class TestCompressConversation:
    @pytest.mark.asyncio
    async def test_replaces_stored_history(self, compressor):
        repo = InMemoryConversationRepository()
        history = _history(11)
        await repo.add_messages("c1", history)

        outcome = await compressor.compress_conversation(repo, "c1", ENABLED)

        stored = await repo.get_history("c1")
        assert outcome.compressed
        assert len(stored) == 6
        assert stored[-4:] == history[-4:]

    @pytest.mark.asyncio
    async def test_uses_stored_settings(self, compressor):
        repo = InMemoryConversationRepository()
        await repo.add_messages("c1", _history(11))
        await repo.set_compression_settings("c1", CompressionSettings(enabled=False))

        outcome = await compressor.compress_conversation(repo, "c1")

        assert not outcome.compressed
        assert await repo.get_message_count("c1") == 12

    @pytest.mark.asyncio
    async def test_stats_accumulate_per_conversation(self, compressor):
        await compressor.compress("c1", _history(11), ENABLED)
        await compressor.compress("c1", _history(13), ENABLED)
        await compressor.compress("c2", _history(3), ENABLED)  # no-op

        stats = compressor.get_stats("c1")
        assert stats.total_compressions == 2
        assert stats.total_tokens_saved > 0
        assert stats.current_summary.startswith("Summary")
        assert compressor.get_stats("c2") is None
        assert set(compressor.all_stats()) == {"c1"}

        compressor.clear_stats("c1")
        assert compressor.get_stats("c1") is None


def test_fallback_summary_lists_first_user_topics():
    messages = [Message.user(f"topic {i}") for i in range(5)] + [Message.assistant("a")]
    summary = fallback_summary(messages)
    assert "6 earlier messages" in summary
    assert "topic 0" in summary and "topic 2" in summary
    assert "topic 3" not in summary


def test_estimate_tokens_saved_never_negative():
    assert estimate_tokens_saved([Message.user("hi")], "a much longer summary") == 0
