"""Schemas for the playground report generation APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.frames import SectionPayload


class ReportGenerateRequest(BaseModel):
    threadId: UUID = Field(..., description="Thread the report belongs to.")
    prompt: str = Field(..., min_length=1, max_length=20000, description="User request for the report.")
    model: Optional[str] = Field(default=None, description="Model identifier; must be on the allow-list.")
    systemPrompt: Optional[str] = Field(default=None, max_length=20000)
    extractEntities: bool = Field(default=True, description="Run entity extraction after generation.")
    language: str = Field(default="en", min_length=2, max_length=8)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("prompt must not be blank")
        return stripped

    @field_validator("model", "systemPrompt", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("language")
    @classmethod
    def _normalize_language(cls, value: str) -> str:
        return value.strip().lower()


class ThreadCreateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)


class ThreadResponse(BaseModel):
    id: UUID
    title: str
    status: str
    isBookmarked: bool = Field(..., validation_alias="is_bookmarked")
    createdAt: datetime = Field(..., validation_alias="created_at")
    updatedAt: datetime = Field(..., validation_alias="updated_at")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class GenerationCancelResponse(BaseModel):
    threadId: UUID
    generationId: str
    cancelled: bool = True


class ReportEntity(BaseModel):
    name: str
    slug: str
    type: str
    ticker: Optional[str] = None
    context: Optional[str] = None
    sentiment: float = 0.0
    relevance: float = 0.0


class ReportResponse(BaseModel):
    id: UUID
    threadId: UUID
    generationId: str
    model: str
    prompt: str
    content: str
    sections: List[SectionPayload]
    entities: List[ReportEntity] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    totalTokens: Optional[int] = None
    totalCost: Optional[float] = None
    createdAt: datetime


__all__ = [
    "GenerationCancelResponse",
    "ReportEntity",
    "ReportGenerateRequest",
    "ReportResponse",
    "ThreadCreateRequest",
    "ThreadResponse",
]
