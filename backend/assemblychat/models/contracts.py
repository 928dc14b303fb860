"""API and pipeline contract models.

Python attributes are snake_case; the JSON wire format is camelCase because
the chat UI consumes these payloads directly. Always dump with
``by_alias=True`` (FastAPI does this for ``response_model``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

HEX_COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === Pipeline Types ===


class AssemblyPart(_CamelModel):
    name: str = Field(min_length=1)
    description: str | None = None
    color: str = Field(pattern=HEX_COLOR_PATTERN)


class AssemblyStep(_CamelModel):
    step_index: int = Field(ge=1)
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    parts: list[AssemblyPart] = []
    image_base64: str | None = None  # data URI, e.g. "data:image/png;base64,..."


class ExtractionResult(_CamelModel):
    summary: str = ""
    steps: list[AssemblyStep] = []


class ChatMetadata(BaseModel):
    """Caller-supplied context for one pipeline run."""

    user_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    file_name: str = Field(min_length=1)


# === API Responses ===


class PersistedChat(_CamelModel):
    chat_id: str
    title: str
    file_name: str
    created_at: datetime
    updated_at: datetime
    assembly_steps: list[AssemblyStep] = []


class ChatSummary(_CamelModel):
    id: str
    title: str
    file_name: str
    created_at: datetime
    updated_at: datetime
    assembly_step_count: int = 0


class AssemblyStepRecord(AssemblyStep):
    id: str
    chat_id: str
    created_at: datetime
    updated_at: datetime


class MessageRecord(_CamelModel):
    id: str
    chat_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime


class CreateMessageRequest(BaseModel):
    content: str = ""


class DeleteChatResponse(BaseModel):
    success: bool = True


class ErrorResponse(BaseModel):
    error: str
