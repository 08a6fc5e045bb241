"""Schemas for business plan generation endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class BusinessPlanGenerateRequest(BaseModel):
    section_keys: list[str] = Field(default_factory=list)
    preset: str = "balanced"


class BusinessPlanGenerateResponse(BaseModel):
    job_id: str
    status: str
    project_id: str


class BusinessPlanStatusResponse(BaseModel):
    project_id: str
    job_id: Optional[str] = None
    status: Optional[str] = None
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    latest_version: Optional[int] = None
    success_count: Optional[int] = None
    failure_count: Optional[int] = None
