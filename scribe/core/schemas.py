"""Response shapes expected from the assist and analysis backends.

A payload that does not validate is a malformed success and is treated as
an AI service failure by the classifier (pydantic.ValidationError).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AssistResponse(BaseModel):
    """Result of prompt / continue / modify calls."""

    model_config = ConfigDict(extra="allow")

    success: bool
    content: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _content_required_on_success(self) -> "AssistResponse":
        if self.success and self.content is None:
            raise ValueError("Invalid response format from AI service: missing content")
        return self


class Concern(BaseModel):
    """One proofreading concern raised by analysis."""

    model_config = ConfigDict(extra="allow")

    id: str
    category: str
    severity: str
    title: str
    description: str = ""
    suggestions: list[str] = Field(default_factory=list)


class AnalysisResponse(BaseModel):
    """Result of document analysis (AI-backed or local heuristic)."""

    model_config = ConfigDict(extra="allow")

    success: bool
    concerns: list[Concern] = Field(default_factory=list)
    analysis: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    fallback_used: bool = False
    cache_used: bool = False
