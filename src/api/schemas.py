"""Pydantic schemas used only by the HTTP layer.

The turn request/response DTOs live in :mod:`src.models`; this module
holds the health, status and direct-tool-call shapes.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "clinic-assistant"


class StatusResponse(BaseModel):
    """Which assistant features are switched on for this deployment."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    classifier_backend: str
    booking_enabled: bool
    intake_tasks_enabled: bool
    tools: list[str]


class ToolExecuteRequest(BaseModel):
    """Direct tool call from a staff client."""

    tool: str = Field(..., min_length=1, max_length=100, description="Registered tool name")
    params: dict[str, Any] = Field(default_factory=dict, description="camelCase tool parameters")
