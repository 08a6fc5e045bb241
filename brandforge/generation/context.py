"""Execution context handed to job runners by the worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from brandforge.core.config import Settings
from brandforge.generation.section_generator import SectionGenerator


@dataclass(frozen=True)
class JobContext:
    session: Session
    job_id: str
    job_type: str
    org_id: str
    project_id: str | None
    worker_id: str
    generator: SectionGenerator
    settings: Settings
    sleep: Callable[[float], None]
