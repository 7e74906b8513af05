"""Pydantic DTOs for per-conversation settings and the chat request body.

These models are what callers send and what the repositories persist in
their side tables (serialized with model_dump / model_validate).
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ResponseFormat(str, Enum):
    PLAIN = "plain"
    JSON = "json"
    MARKDOWN = "markdown"


class CollectionMode(str, Enum):
    NONE = "none"
    TECHNICAL_SPEC = "technical_spec"
    DESIGN_BRIEF = "design_brief"
    PROJECT_SUMMARY = "project_summary"
    CUSTOM = "custom"
    SOLVE_DIRECT = "solve_direct"
    SOLVE_STEP_BY_STEP = "solve_step_by_step"
    SOLVE_EXPERT_PANEL = "solve_expert_panel"


_RESULT_TITLES: dict[CollectionMode, str] = {
    CollectionMode.TECHNICAL_SPEC: "Technical specification",
    CollectionMode.DESIGN_BRIEF: "Design brief",
    CollectionMode.PROJECT_SUMMARY: "Project summary",
    CollectionMode.CUSTOM: "Result",
    CollectionMode.SOLVE_DIRECT: "Direct answer",
    CollectionMode.SOLVE_STEP_BY_STEP: "Step-by-step solution",
    CollectionMode.SOLVE_EXPERT_PANEL: "Expert panel opinions",
}


class CollectionSettings(BaseModel):
    """Data-collection mode: what the model should gather before answering."""

    mode: CollectionMode = CollectionMode.NONE
    custom_prompt: str = ""  # used by CUSTOM mode
    result_title: str = ""
    enabled: bool = False
    custom_system_prompt: str = ""  # replaces the default persona when non-blank

    @property
    def active(self) -> bool:
        return self.enabled and self.mode != CollectionMode.NONE

    @classmethod
    def for_mode(cls, mode: CollectionMode) -> CollectionSettings:
        if mode == CollectionMode.NONE:
            return cls()
        return cls(mode=mode, result_title=_RESULT_TITLES[mode], enabled=True)


class CompressionSettings(BaseModel):
    """History compression policy for one conversation."""

    enabled: bool = False
    message_threshold: int = Field(10, ge=1)
    keep_recent_messages: int = Field(4, ge=0)


class ChatRequest(BaseModel):
    """Body of POST /chat."""

    message: str = Field(min_length=1)
    conversation_id: str | None = None
    response_format: ResponseFormat = ResponseFormat.PLAIN
    collection_settings: CollectionSettings | None = None
    compression_settings: CompressionSettings | None = None
    temperature: float | None = Field(None, ge=0.0, le=2.0)  # this turn only
