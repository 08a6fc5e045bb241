from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import threading
from typing import Callable, Dict, List, Optional
import uuid

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from brandforge.ai.providers.base import CompletionRequest, CompletionResult
from brandforge.ai.providers.factory import reset_completion_provider_cache
from brandforge.billing.plans import load_plans
from brandforge.core.config import get_settings
from brandforge.jobs.worker import JobWorker
from brandforge.storage.db import Base, load_models
from brandforge.storage.models import Organization, Project


PLANS_FILE = Path(__file__).resolve().parents[1] / "config" / "plans.yaml"

PLAN_LIMITS = {"BASIC": 100_000, "MID": 500_000, "PRO": 2_000_000}


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return None
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def delete(self, key: str):
        return 1 if self._store.pop(key, None) is not None else 0

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0

    def ping(self) -> bool:
        return True


class ScriptedProvider:
    """Completion provider driven by a callable; records every request it receives."""

    provider_name = "scripted"

    def __init__(self, handler: Optional[Callable[[CompletionRequest], str]] = None) -> None:
        self._handler = handler or (lambda request: '{"title": "Generated", "content": "ok"}')
        self.requests: List[CompletionRequest] = []
        self._lock = threading.Lock()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        with self._lock:
            self.requests.append(request)
        content = self._handler(request)
        return CompletionResult(
            content=content,
            model="scripted-v1",
            provider=self.provider_name,
            tokens_in=100,
            tokens_out=50,
        )


def section_of(request: CompletionRequest) -> str:
    for message in request.messages:
        for line in message.get("content", "").splitlines():
            if line.startswith("Section: "):
                return line[len("Section: ") :].strip()
    return ""


def configure_test_env(monkeypatch, **overrides: str) -> None:
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite://")
    monkeypatch.setenv("PLANS_FILE_PATH", str(PLANS_FILE))
    monkeypatch.setenv("AI_PROVIDER", "mock")
    monkeypatch.setenv("GENERATION_LOCK_BACKEND", "redis")
    monkeypatch.setenv("INLINE_JOB_PROCESSING", "false")
    monkeypatch.setenv("SENTRY_DSN", "")
    for key, value in overrides.items():
        monkeypatch.setenv(key.upper(), str(value))
    get_settings.cache_clear()
    load_plans.cache_clear()
    reset_completion_provider_cache()


def reset_test_env() -> None:
    get_settings.cache_clear()
    load_plans.cache_clear()
    reset_completion_provider_cache()


def build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_org(
    session: Session,
    *,
    plan: str = "MID",
    used: int = 0,
    bonus: int = 0,
    reset_date: Optional[datetime] = None,
) -> Organization:
    organization = Organization(
        id=str(uuid.uuid4()),
        name=f"org-{plan.lower()}",
        plan=plan,
        monthly_token_limit=PLAN_LIMITS[plan],
        monthly_tokens_used=used,
        bonus_tokens=bonus,
        token_reset_date=reset_date or datetime.now(timezone.utc),
    )
    session.add(organization)
    session.commit()
    return organization


def create_project(session: Session, *, org_id: str, name: str = "Acme Coffee") -> Project:
    project = Project(
        id=str(uuid.uuid4()),
        org_id=org_id,
        name=name,
        description="Specialty coffee roaster for remote teams.",
    )
    session.add(project)
    session.commit()
    return project


def build_worker(
    session_factory: sessionmaker,
    *,
    provider=None,
    sleeps: Optional[List[float]] = None,
    **settings_overrides,
) -> JobWorker:
    settings = get_settings().model_copy(update=settings_overrides)
    recorded = sleeps if sleeps is not None else []
    return JobWorker(
        session_factory=session_factory,
        provider=provider or ScriptedProvider(),
        settings=settings,
        worker_id="worker-test",
        heartbeat=lambda worker_id, status, processed: None,
        sleep=recorded.append,
    )
