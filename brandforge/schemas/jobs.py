"""Schemas for job status and operator endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


class JobStatusResponse(BaseModel):
    job_id: str
    type: str
    status: str
    progress: int
    message: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class JobEnqueueResponse(BaseModel):
    job_id: str
    type: str
    status: str
    created: bool
    idempotent: bool = False


class StageRunRequest(BaseModel):
    preset: str = "balanced"
    regenerate: bool = False


class StageRunResponse(JobEnqueueResponse):
    stage_id: str
    output_id: str
