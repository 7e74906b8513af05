"""Transactional conversation repository on SQLAlchemy async sessions.

Every public method runs in its own transaction, so replace_history
(delete + re-insert) is never visible half-done. Appends lock the
conversation row (SELECT ... FOR UPDATE on Postgres) to serialize
sequence numbers per conversation without a table-wide lock.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from archivist.api.models import SYSTEM, ConversationInfo, Message, ToolCallRequest
from archivist.api.schemas import CollectionSettings, CompressionSettings, ResponseFormat
from archivist.storage.database import Database
from archivist.storage.models import Conversation, ConversationMetadata, StoredMessage
from archivist.storage.repository import last_dialogue_preview

logger = logging.getLogger(__name__)


def _to_message(row: StoredMessage) -> Message:
    return Message(
        role=row.role,
        content=row.content,
        tool_calls=tuple(ToolCallRequest.from_dict(tc) for tc in row.tool_calls or []),
        tool_call_id=row.tool_call_id,
    )


def _to_row(conversation_id: str, sequence_number: int, message: Message) -> StoredMessage:
    return StoredMessage(
        conversation_id=conversation_id,
        sequence_number=sequence_number,
        role=message.role,
        content=message.content,
        tool_calls=[tc.to_dict() for tc in message.tool_calls] or None,
        tool_call_id=message.tool_call_id,
    )


class SqlConversationRepository:
    """Conversation store backed by the conversations/messages tables."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_conversation(self, conversation_id: str, session: AsyncSession) -> bool:
        """Create the conversation row if missing. Returns True if created."""
        dialect = session.bind.dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = (
                insert(Conversation)
                .values(id=conversation_id)
                .on_conflict_do_nothing(index_elements=["id"])
            )
            result = await session.execute(stmt)
            return bool(result.rowcount)

        existing = await session.get(Conversation, conversation_id)
        if existing is not None:
            return False
        session.add(Conversation(id=conversation_id))
        await session.flush()
        return True

    async def _lock_conversation(self, conversation_id: str, session: AsyncSession) -> None:
        await session.execute(
            select(Conversation.id).where(Conversation.id == conversation_id).with_for_update()
        )

    async def _next_sequence(self, conversation_id: str, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.max(StoredMessage.sequence_number)).where(
                StoredMessage.conversation_id == conversation_id
            )
        )
        current = result.scalar_one_or_none()
        return 0 if current is None else current + 1

    async def _touch(self, conversation_id: str, session: AsyncSession) -> None:
        await session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(updated_at=datetime.now(UTC))
        )

    async def _history(self, conversation_id: str, session: AsyncSession) -> list[Message]:
        result = await session.execute(
            select(StoredMessage)
            .where(StoredMessage.conversation_id == conversation_id)
            .order_by(StoredMessage.sequence_number)
        )
        return [_to_message(row) for row in result.scalars()]

    async def _get_metadata(
        self, conversation_id: str, session: AsyncSession
    ) -> ConversationMetadata | None:
        return await session.get(ConversationMetadata, conversation_id)

    async def _upsert_metadata(
        self, conversation_id: str, session: AsyncSession, **values: object
    ) -> None:
        await self._ensure_conversation(conversation_id, session)
        metadata = await self._get_metadata(conversation_id, session)
        if metadata is None:
            session.add(ConversationMetadata(conversation_id=conversation_id, **values))
        else:
            for key, value in values.items():
                setattr(metadata, key, value)
        await self._touch(conversation_id, session)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def has_conversation(self, conversation_id: str) -> bool:
        # A settings-only row does not count as a conversation
        return await self.get_message_count(conversation_id) > 0

    async def init_conversation(self, conversation_id: str, system_message: Message) -> None:
        async with self.db.session() as session:
            await self._ensure_conversation(conversation_id, session)
            await self._lock_conversation(conversation_id, session)
            if await self._next_sequence(conversation_id, session) == 0:
                session.add(_to_row(conversation_id, 0, system_message))
                logger.debug("Initialized conversation %s", conversation_id)
            await session.commit()

    async def get_history(self, conversation_id: str) -> list[Message]:
        async with self.db.session() as session:
            return await self._history(conversation_id, session)

    async def add_message(self, conversation_id: str, message: Message) -> None:
        await self.add_messages(conversation_id, [message])

    async def add_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        async with self.db.session() as session:
            await self._ensure_conversation(conversation_id, session)
            await self._lock_conversation(conversation_id, session)
            next_seq = await self._next_sequence(conversation_id, session)
            for offset, message in enumerate(messages):
                session.add(_to_row(conversation_id, next_seq + offset, message))
            await self._touch(conversation_id, session)
            await session.commit()

    async def update_system_prompt(self, conversation_id: str, system_prompt: str) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                select(StoredMessage)
                .where(StoredMessage.conversation_id == conversation_id)
                .order_by(StoredMessage.sequence_number)
                .limit(1)
                .with_for_update()
            )
            first = result.scalar_one_or_none()
            if first is None or first.role != SYSTEM:
                return
            first.content = system_prompt
            await self._touch(conversation_id, session)
            await session.commit()

    async def replace_history(self, conversation_id: str, messages: Sequence[Message]) -> None:
        async with self.db.session() as session:
            await self._ensure_conversation(conversation_id, session)
            await self._lock_conversation(conversation_id, session)
            await session.execute(
                delete(StoredMessage).where(StoredMessage.conversation_id == conversation_id)
            )
            # Flush the delete before re-inserting to satisfy the sequence constraint
            await session.flush()
            session.add_all(
                _to_row(conversation_id, index, message) for index, message in enumerate(messages)
            )
            await self._touch(conversation_id, session)
            await session.commit()

    async def get_message_count(self, conversation_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(StoredMessage)
                .where(StoredMessage.conversation_id == conversation_id)
            )
            return result.scalar_one()

    # ------------------------------------------------------------------
    # Per-conversation settings
    # ------------------------------------------------------------------

    async def get_format(self, conversation_id: str) -> ResponseFormat | None:
        async with self.db.session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None or conversation.response_format is None:
                return None
            return ResponseFormat(conversation.response_format)

    async def set_format(self, conversation_id: str, response_format: ResponseFormat) -> None:
        async with self.db.session() as session:
            await self._ensure_conversation(conversation_id, session)
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(response_format=response_format.value, updated_at=datetime.now(UTC))
            )
            await session.commit()

    async def get_collection_settings(self, conversation_id: str) -> CollectionSettings | None:
        async with self.db.session() as session:
            metadata = await self._get_metadata(conversation_id, session)
            if metadata is None or metadata.collection_settings is None:
                return None
            return CollectionSettings.model_validate(metadata.collection_settings)

    async def set_collection_settings(
        self, conversation_id: str, settings: CollectionSettings
    ) -> None:
        async with self.db.session() as session:
            await self._upsert_metadata(
                conversation_id, session, collection_settings=settings.model_dump(mode="json")
            )
            await session.commit()

    async def get_compression_settings(self, conversation_id: str) -> CompressionSettings | None:
        async with self.db.session() as session:
            metadata = await self._get_metadata(conversation_id, session)
            if metadata is None or metadata.compression_settings is None:
                return None
            return CompressionSettings.model_validate(metadata.compression_settings)

    async def set_compression_settings(
        self, conversation_id: str, settings: CompressionSettings
    ) -> None:
        async with self.db.session() as session:
            await self._upsert_metadata(
                conversation_id, session, compression_settings=settings.model_dump(mode="json")
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Conversation management
    # ------------------------------------------------------------------

    async def list_conversations(self) -> list[ConversationInfo]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Conversation.id).order_by(Conversation.updated_at.desc())
            )
            infos = []
            for conversation_id in result.scalars().all():
                history = await self._history(conversation_id, session)
                if not history:
                    continue
                infos.append(
                    ConversationInfo(
                        id=conversation_id,
                        message_count=len(history),
                        last_message=last_dialogue_preview(history),
                    )
                )
            return infos

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self.db.session() as session:
            # Explicit deletes: SQLite does not enforce ON DELETE CASCADE by default
            deleted = await session.execute(
                delete(StoredMessage).where(StoredMessage.conversation_id == conversation_id)
            )
            await session.execute(
                delete(ConversationMetadata).where(
                    ConversationMetadata.conversation_id == conversation_id
                )
            )
            await session.execute(delete(Conversation).where(Conversation.id == conversation_id))
            await session.commit()
            return bool(deleted.rowcount)
