"""FastAPI dependencies: caller identity from upstream headers, lock manager, worker."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from redis import Redis
from sqlalchemy.orm import Session

from brandforge.core.config import get_settings
from brandforge.jobs.worker import JobWorker
from brandforge.orchestrator.locks import GenerationLockManager, get_generation_lock_manager
from brandforge.storage.db import get_session, get_session_factory
from brandforge.storage.redis_client import get_client
from brandforge.storage.tenant import release_org_context, set_org_context


@dataclass(frozen=True)
class OrgContext:
    org_id: str
    actor: Optional[str]
    role: str


def get_org_context(
    x_org_id: Optional[str] = Header(default=None),
    x_actor_id: Optional[str] = Header(default=None),
    x_org_role: Optional[str] = Header(default=None),
) -> OrgContext:
    org_id = (x_org_id or "").strip()
    if not org_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Organization context required")
    return OrgContext(
        org_id=org_id,
        actor=(x_actor_id or "").strip() or None,
        role=(x_org_role or "member").strip().lower(),
    )


def require_org_role(*allowed_roles: str) -> Callable[[OrgContext], OrgContext]:
    allowed = set(allowed_roles)

    def dependency(org: OrgContext = Depends(get_org_context)) -> OrgContext:
        if org.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return org

    return dependency


def get_org_session(
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
) -> Iterator[Session]:
    set_org_context(session, org.org_id)
    try:
        yield session
    finally:
        release_org_context(session)


def get_redis() -> Redis:
    return get_client()


def get_lock_manager(
    session: Session = Depends(get_org_session),
    redis_client: Redis = Depends(get_redis),
) -> GenerationLockManager:
    return get_generation_lock_manager(session, redis_client=redis_client)


@lru_cache(maxsize=1)
def _shared_inline_worker() -> JobWorker:
    return JobWorker(session_factory=get_session_factory())


def get_inline_worker() -> Optional[JobWorker]:
    """Worker for the inline fast path, or None when jobs are left to the polling worker."""

    if not get_settings().inline_job_processing:
        return None
    return _shared_inline_worker()


def process_inline(worker: Optional[JobWorker], job_id: str) -> None:
    if worker is None:
        return
    worker.process_job(job_id)
