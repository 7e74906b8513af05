"""History compression: bound context growth with a synthetic summary.

Policy: once a conversation grows past ``message_threshold`` messages,
everything between the system message and the last ``keep_recent_messages``
messages is replaced by a single assistant-role summary. The summary text
comes from the LLM client; when that call fails a deterministic fallback
summary is used so compression never fails a turn.

This module is independent of AgentRunner to avoid circular imports
and keep runner.py focused on orchestration.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from archivist.api.llm import LLMClient
from archivist.api.models import (
    ASSISTANT,
    SYSTEM,
    TOOL,
    USER,
    CompressionOutcome,
    CompressionStats,
    Message,
)
from archivist.api.schemas import CompressionSettings
from archivist.config import Settings
from archivist.storage.repository import ConversationRepository

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompt
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You write short summaries of conversations so they can be continued later.

Keep:
- key facts and decisions
- the user's important questions
- the main answers and recommendations
- any context needed to carry on the conversation

Format:
- Start with "Summary of the earlier conversation:"
- Use a bulleted list
- Be concise but do not drop important details
- Write in the same language as the conversation
"""

SUMMARY_HEADER = "Summary of the earlier conversation:"

_ROLE_LABELS = {USER: "User", ASSISTANT: "Assistant", TOOL: "Tool", SYSTEM: "System"}

# Rough size heuristic, not a real tokenizer
CHARS_PER_TOKEN = 4


def estimate_tokens_saved(original: Sequence[Message], summary: str) -> int:
    original_chars = sum(len(m.content or "") for m in original)
    return max(0, (original_chars - len(summary)) // CHARS_PER_TOKEN)


def fallback_summary(messages: Sequence[Message]) -> str:
    """Summary built without the model: message count plus the first user topics."""
    topics = [m.content[:100] for m in messages if m.role == USER and m.content]
    lines = [SUMMARY_HEADER, f"- {len(messages)} earlier messages"]
    if topics:
        lines.append("- Main topics:")
        lines.extend(f"  - {topic}..." for topic in topics[:3])
    return "\n".join(lines)


class HistoryCompressor:
    """Decides when to compress a history and splices in the summary.

    Keeps running per-conversation stats (total compressions, tokens saved,
    current summary) for the compression endpoint.
    """

    def __init__(self, llm: LLMClient, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings
        self._stats: dict[str, CompressionStats] = {}

    def default_settings(self) -> CompressionSettings:
        """Compression policy used when a conversation has none stored."""
        return CompressionSettings(
            enabled=self._settings.compression_enabled,
            message_threshold=self._settings.compression_message_threshold,
            keep_recent_messages=self._settings.compression_keep_recent,
        )

    @staticmethod
    def _split(
        history: Sequence[Message], settings: CompressionSettings
    ) -> tuple[list[Message], list[Message], list[Message]] | None:
        """Partition into (prefix, head, tail), or None when nothing to summarize."""
        total = len(history)
        keep = settings.keep_recent_messages
        if keep >= total - 1:
            return None

        start = 1 if history and history[0].role == SYSTEM else 0
        cut = total - keep
        # A tail must not open with tool results whose assistant call got summarized
        while cut > start and cut < total and history[cut].role == TOOL:
            cut -= 1
        if cut <= start:
            return None
        return list(history[:start]), list(history[start:cut]), list(history[cut:])

    def needs_compression(self, history: Sequence[Message], settings: CompressionSettings) -> bool:
        if not settings.enabled or len(history) <= settings.message_threshold:
            return False
        return self._split(history, settings) is not None

    async def compress(
        self,
        conversation_id: str,
        history: Sequence[Message],
        settings: CompressionSettings,
    ) -> tuple[list[Message], CompressionOutcome]:
        """Return the compressed history and the outcome. Does not persist."""
        original_count = len(history)
        parts = self._split(history, settings) if self.needs_compression(history, settings) else None
        if parts is None:
            return list(history), CompressionOutcome(
                compressed=False,
                original_count=original_count,
                compressed_count=original_count,
            )

        prefix, head, tail = parts
        start_time = time.monotonic()
        summary = await self._summarize(head)
        compressed = prefix + [Message.assistant(summary)] + tail
        tokens_saved = estimate_tokens_saved(head, summary)

        outcome = CompressionOutcome(
            compressed=True,
            original_count=original_count,
            compressed_count=len(compressed),
            summary=summary,
            estimated_tokens_saved=tokens_saved,
        )
        self._record(conversation_id, outcome)

        logger.info(
            "Compressed conversation %s: %d -> %d messages (~%d tokens saved, %d ms)",
            conversation_id,
            original_count,
            len(compressed),
            tokens_saved,
            int((time.monotonic() - start_time) * 1000),
        )
        return compressed, outcome

    async def compress_conversation(
        self,
        repository: ConversationRepository,
        conversation_id: str,
        settings: CompressionSettings | None = None,
    ) -> CompressionOutcome:
        """Compress the stored history in place via replace_history."""
        if settings is None:
            settings = await repository.get_compression_settings(conversation_id)
        if settings is None:
            settings = self.default_settings()

        history = await repository.get_history(conversation_id)
        compressed, outcome = await self.compress(conversation_id, history, settings)
        if outcome.compressed:
            await repository.replace_history(conversation_id, compressed)
        return outcome

    async def _summarize(self, messages: Sequence[Message]) -> str:
        dialogue = "\n".join(
            f"{_ROLE_LABELS.get(m.role, m.role)}: {m.content or '[empty]'}" for m in messages
        )
        request = [Message.user(f"Summarize the following conversation:\n\n{dialogue}")]
        try:
            reply = await self._llm.send(
                SUMMARY_SYSTEM_PROMPT,
                request,
                temperature=self._settings.summary_temperature,
                max_tokens=self._settings.summary_max_tokens,
            )
        except Exception as e:
            logger.error("Summary generation failed, using fallback summary: %s", e)
            return fallback_summary(messages)
        if not reply.content or not reply.content.strip():
            logger.warning("Model returned an empty summary, using fallback summary")
            return fallback_summary(messages)
        return reply.content

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _record(self, conversation_id: str, outcome: CompressionOutcome) -> None:
        stats = self._stats.setdefault(conversation_id, CompressionStats())
        stats.total_compressions += 1
        stats.total_tokens_saved += outcome.estimated_tokens_saved
        stats.current_summary = outcome.summary
        stats.last_outcome = outcome

    def get_stats(self, conversation_id: str) -> CompressionStats | None:
        return self._stats.get(conversation_id)

    def all_stats(self) -> dict[str, CompressionStats]:
        return dict(self._stats)

    def clear_stats(self, conversation_id: str | None = None) -> None:
        if conversation_id is None:
            self._stats.clear()
        else:
            self._stats.pop(conversation_id, None)
