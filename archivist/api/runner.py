"""Agent runner: the tool-calling chat loop.

One chat turn moves through TurnState:

    RECEIVED -> PROMPT_READY -> MODEL_CALLED
        -> {TOOLS_PENDING -> TOOLS_RESOLVED -> MODEL_CALLED}* -> DONE

with FAILED reachable from any state. Tool failures never reach FAILED
(the executor turns them into tool-result text); LLM and storage errors
propagate to the caller.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from enum import Enum

from archivist.api.compaction import HistoryCompressor
from archivist.api.llm import LLMClient
from archivist.api.models import ChatResult, CompressionOutcome, Message, ToolRunResult
from archivist.api.prompts import PromptBuilder
from archivist.api.schemas import CollectionSettings, CompressionSettings, ResponseFormat
from archivist.api.tools import ToolExecutor, ToolRegistry
from archivist.config import Settings
from archivist.storage.repository import ConversationRepository
from archivist.utils import KeyedLock

logger = logging.getLogger(__name__)

# Latest turn states kept for turn_state(); oldest conversations are evicted first
_MAX_TRACKED_STATES = 1024


class TurnState(str, Enum):
    RECEIVED = "received"
    PROMPT_READY = "prompt_ready"
    MODEL_CALLED = "model_called"
    TOOLS_PENDING = "tools_pending"
    TOOLS_RESOLVED = "tools_resolved"
    DONE = "done"
    FAILED = "failed"


class AgentRunner:
    """Runs conversational turns against a repository, registry and LLM.

    Turns on the same conversation id are serialized by a per-conversation
    asyncio.Lock; turns on different ids run independently.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        registry: ToolRegistry,
        llm: LLMClient,
        settings: Settings,
        prompt_builder: PromptBuilder | None = None,
        compressor: HistoryCompressor | None = None,
        max_iterations: int | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._llm = llm
        self._settings = settings
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._compressor = compressor
        self._executor = ToolExecutor(registry, timeout=settings.tool_timeout)
        self._max_iterations = max_iterations if max_iterations is not None else settings.max_iterations
        if self._max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._turn_locks = KeyedLock()
        self._states: OrderedDict[str, TurnState] = OrderedDict()

    @property
    def repository(self) -> ConversationRepository:
        return self._repository

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def turn_state(self, conversation_id: str) -> TurnState | None:
        """State of the latest turn for a conversation (None if no turn ran)."""
        return self._states.get(conversation_id)

    def _set_state(self, conversation_id: str, state: TurnState) -> None:
        self._states[conversation_id] = state
        self._states.move_to_end(conversation_id)
        while len(self._states) > _MAX_TRACKED_STATES:
            self._states.popitem(last=False)
        logger.debug("Conversation %s -> %s", conversation_id, state.value)

    async def chat(
        self,
        conversation_id: str | None,
        user_message: str,
        response_format: ResponseFormat | None = None,
        collection_settings: CollectionSettings | None = None,
        compression_settings: CompressionSettings | None = None,
        temperature: float | None = None,
    ) -> ChatResult:
        """Execute a single conversational turn.

        Settings passed here are stored on the conversation and apply to
        later turns too; omitted settings fall back to the stored ones.
        temperature applies to this turn only (None uses the client default).
        """
        conversation_id = conversation_id or str(uuid.uuid4())

        async with self._turn_locks.hold(conversation_id):
            self._set_state(conversation_id, TurnState.RECEIVED)
            start_time = time.monotonic()
            try:
                result = await self._run_turn(
                    conversation_id,
                    user_message,
                    response_format,
                    collection_settings,
                    compression_settings,
                    temperature,
                )
            except Exception:
                self._set_state(conversation_id, TurnState.FAILED)
                logger.exception("Chat turn failed for conversation %s", conversation_id)
                raise

            self._set_state(conversation_id, TurnState.DONE)
            logger.info(
                "Turn done for %s: %d model calls, %d tool calls, %d ms",
                conversation_id,
                result.iterations,
                len(result.tool_results),
                int((time.monotonic() - start_time) * 1000),
            )
            return result

    async def _run_turn(
        self,
        conversation_id: str,
        user_message: str,
        response_format: ResponseFormat | None,
        collection_settings: CollectionSettings | None,
        compression_settings: CompressionSettings | None,
        temperature: float | None,
    ) -> ChatResult:
        repo = self._repository

        # RECEIVED: resolve settings, init or refresh the system prompt
        existed = await repo.has_conversation(conversation_id)
        stored_format = await repo.get_format(conversation_id)
        stored_collection = await repo.get_collection_settings(conversation_id)

        effective_format = response_format or stored_format or ResponseFormat.PLAIN
        effective_collection = (
            collection_settings if collection_settings is not None else stored_collection
        )

        if response_format is not None and response_format != stored_format:
            await repo.set_format(conversation_id, response_format)
        if collection_settings is not None and collection_settings != stored_collection:
            await repo.set_collection_settings(conversation_id, collection_settings)
        if compression_settings is not None:
            await repo.set_compression_settings(conversation_id, compression_settings)

        system_prompt = self._prompt_builder.build(effective_format, effective_collection)

        if not existed:
            await repo.init_conversation(conversation_id, Message.system(system_prompt))
        else:
            format_changed = stored_format is not None and effective_format != stored_format
            collection_changed = (
                collection_settings is not None and collection_settings != stored_collection
            )
            if format_changed or collection_changed:
                logger.info("Refreshing system prompt for conversation %s", conversation_id)
                await repo.update_system_prompt(conversation_id, system_prompt)

        compression = await self._maybe_compress(conversation_id, compression_settings)

        # PROMPT_READY
        await repo.add_message(conversation_id, Message.user(user_message))
        self._set_state(conversation_id, TurnState.PROMPT_READY)

        return await self._tool_loop(conversation_id, system_prompt, compression, temperature)

    async def _maybe_compress(
        self,
        conversation_id: str,
        compression_settings: CompressionSettings | None,
    ) -> CompressionOutcome | None:
        if self._compressor is None:
            return None
        settings = compression_settings
        if settings is None:
            settings = await self._repository.get_compression_settings(conversation_id)
        if settings is None:
            settings = self._compressor.default_settings()
        if not settings.enabled:
            return None
        outcome = await self._compressor.compress_conversation(
            self._repository, conversation_id, settings
        )
        return outcome if outcome.compressed else None

    async def _tool_loop(
        self,
        conversation_id: str,
        system_prompt: str,
        compression: CompressionOutcome | None,
        temperature: float | None = None,
    ) -> ChatResult:
        """Call the model and resolve tool calls until a final answer.

        Every model call counts as one iteration. A reply that still asks
        for tools on the last allowed iteration becomes the final answer.
        """
        repo = self._repository
        tools = self._registry.get_all_tools()
        all_tool_results: list[ToolRunResult] = []
        iterations = 0
        exhausted = False

        while True:
            history = await repo.get_history(conversation_id)
            self._set_state(conversation_id, TurnState.MODEL_CALLED)
            reply = await self._llm.send(system_prompt, history, tools, temperature=temperature)
            iterations += 1

            if not reply.has_tool_calls:
                break
            if iterations >= self._max_iterations:
                exhausted = True
                logger.warning(
                    "Conversation %s reached max_iterations=%d with %d pending tool calls",
                    conversation_id,
                    self._max_iterations,
                    len(reply.tool_calls),
                )
                break

            self._set_state(conversation_id, TurnState.TOOLS_PENDING)
            tool_calls = self._executor.normalize(reply.tool_calls)
            results = await self._executor.execute_tool_calls(tool_calls, conversation_id)
            await repo.add_messages(
                conversation_id,
                [Message.assistant(reply.content, tool_calls)]
                + [result.to_message() for result in results],
            )
            all_tool_results.extend(results)
            self._set_state(conversation_id, TurnState.TOOLS_RESOLVED)

        # Stored history only keeps resolved tool calls, so the persisted
        # answer drops any calls left pending by the iteration bound
        await repo.add_message(conversation_id, Message.assistant(reply.content or ""))
        final = Message.assistant(reply.content, self._executor.normalize(reply.tool_calls))

        return ChatResult(
            message=final,
            conversation_id=conversation_id,
            iterations=iterations,
            iterations_exhausted=exhausted,
            tool_results=all_tool_results,
            compression=compression,
        )

    async def get_history(self, conversation_id: str) -> list[Message]:
        return await self._repository.get_history(conversation_id)

    async def clear_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation with its settings and compression stats."""
        async with self._turn_locks.hold(conversation_id):
            deleted = await self._repository.delete_conversation(conversation_id)
            if self._compressor is not None:
                self._compressor.clear_stats(conversation_id)
            self._states.pop(conversation_id, None)
        return deleted
