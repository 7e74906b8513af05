"""Conversation repository contract and the in-memory backend.

Every backend honours the same semantics:
- unknown ids never raise: reads return empty/None, appends create the
  conversation, init is first-write-wins, update_system_prompt is a no-op
- get_history returns a snapshot the caller can't use to mutate state
- replace_history is atomic with respect to readers
- a conversation exists once it holds a message; settings alone do not
  create one, and delete_conversation reports whether messages were removed
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from archivist.api.models import SYSTEM, ConversationInfo, Message
from archivist.api.schemas import CollectionSettings, CompressionSettings, ResponseFormat
from archivist.utils import KeyedLock


class ConversationRepository(Protocol):
    """Ordered message history plus per-conversation settings."""

    async def has_conversation(self, conversation_id: str) -> bool: ...

    async def init_conversation(self, conversation_id: str, system_message: Message) -> None: ...

    async def get_history(self, conversation_id: str) -> list[Message]: ...

    async def add_message(self, conversation_id: str, message: Message) -> None: ...

    async def add_messages(self, conversation_id: str, messages: Sequence[Message]) -> None: ...

    async def update_system_prompt(self, conversation_id: str, system_prompt: str) -> None: ...

    async def replace_history(self, conversation_id: str, messages: Sequence[Message]) -> None: ...

    async def get_message_count(self, conversation_id: str) -> int: ...

    async def get_format(self, conversation_id: str) -> ResponseFormat | None: ...

    async def set_format(self, conversation_id: str, response_format: ResponseFormat) -> None: ...

    async def get_collection_settings(self, conversation_id: str) -> CollectionSettings | None: ...

    async def set_collection_settings(
        self, conversation_id: str, settings: CollectionSettings
    ) -> None: ...

    async def get_compression_settings(self, conversation_id: str) -> CompressionSettings | None: ...

    async def set_compression_settings(
        self, conversation_id: str, settings: CompressionSettings
    ) -> None: ...

    async def list_conversations(self) -> list[ConversationInfo]: ...

    async def delete_conversation(self, conversation_id: str) -> bool: ...


def last_dialogue_preview(history: Sequence[Message], limit: int = 100) -> str | None:
    """Content of the latest user/assistant message, truncated for listings."""
    for message in reversed(history):
        if message.role in ("user", "assistant") and message.content:
            return message.content[:limit]
    return None


class InMemoryConversationRepository:
    """Dict-backed repository. Data is lost on restart.

    Each conversation has its own asyncio.Lock; there is no lock spanning
    unrelated conversations. Histories are stored as tuples and swapped by
    reference, so a reader sees either the old or the new sequence.
    """

    def __init__(self) -> None:
        self._histories: dict[str, tuple[Message, ...]] = {}
        self._formats: dict[str, ResponseFormat] = {}
        self._collection_settings: dict[str, CollectionSettings] = {}
        self._compression_settings: dict[str, CompressionSettings] = {}
        self._locks = KeyedLock()

    async def has_conversation(self, conversation_id: str) -> bool:
        return bool(self._histories.get(conversation_id))

    async def init_conversation(self, conversation_id: str, system_message: Message) -> None:
        async with self._locks.hold(conversation_id):
            if not self._histories.get(conversation_id):
                self._histories[conversation_id] = (system_message,)

    async def get_history(self, conversation_id: str) -> list[Message]:
        return list(self._histories.get(conversation_id, ()))

    async def add_message(self, conversation_id: str, message: Message) -> None:
        await self.add_messages(conversation_id, [message])

    async def add_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        async with self._locks.hold(conversation_id):
            history = self._histories.get(conversation_id, ())
            self._histories[conversation_id] = history + tuple(messages)

    async def update_system_prompt(self, conversation_id: str, system_prompt: str) -> None:
        async with self._locks.hold(conversation_id):
            history = self._histories.get(conversation_id)
            if not history or history[0].role != SYSTEM:
                return
            self._histories[conversation_id] = (Message.system(system_prompt),) + history[1:]

    async def replace_history(self, conversation_id: str, messages: Sequence[Message]) -> None:
        async with self._locks.hold(conversation_id):
            self._histories[conversation_id] = tuple(messages)

    async def get_message_count(self, conversation_id: str) -> int:
        return len(self._histories.get(conversation_id, ()))

    async def get_format(self, conversation_id: str) -> ResponseFormat | None:
        return self._formats.get(conversation_id)

    async def set_format(self, conversation_id: str, response_format: ResponseFormat) -> None:
        self._formats[conversation_id] = response_format

    async def get_collection_settings(self, conversation_id: str) -> CollectionSettings | None:
        settings = self._collection_settings.get(conversation_id)
        return settings.model_copy() if settings is not None else None

    async def set_collection_settings(
        self, conversation_id: str, settings: CollectionSettings
    ) -> None:
        self._collection_settings[conversation_id] = settings.model_copy()

    async def get_compression_settings(self, conversation_id: str) -> CompressionSettings | None:
        settings = self._compression_settings.get(conversation_id)
        return settings.model_copy() if settings is not None else None

    async def set_compression_settings(
        self, conversation_id: str, settings: CompressionSettings
    ) -> None:
        self._compression_settings[conversation_id] = settings.model_copy()

    async def list_conversations(self) -> list[ConversationInfo]:
        return [
            ConversationInfo(
                id=conversation_id,
                message_count=len(history),
                last_message=last_dialogue_preview(history),
            )
            for conversation_id, history in list(self._histories.items())
            if history
        ]

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._locks.hold(conversation_id):
            existed = bool(self._histories.pop(conversation_id, None))
            self._formats.pop(conversation_id, None)
            self._collection_settings.pop(conversation_id, None)
            self._compression_settings.pop(conversation_id, None)
        return existed
