"""Schemas for output version endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OutputVersionItem(BaseModel):
    id: str
    output_id: str
    version: int
    type: str
    status: str
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_set_version: Optional[str] = None
    content: Dict[str, Any]
    metadata: Dict[str, Any]
    created_by: Optional[str] = None


class OutputVersionListResponse(BaseModel):
    output_id: str
    items: list[OutputVersionItem]


class OutputEditRequest(BaseModel):
    content: Dict[str, Any] = Field(min_length=1)
