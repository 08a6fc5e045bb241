"""Per-(organization, resource) generation locks.

Two backends share one contract: ``acquire`` never blocks and returns ``None``
when the lock is taken, and ``hold`` releases on every exit path.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional
import uuid

from redis import Redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger
from brandforge.storage.db import is_postgresql
from brandforge.storage.redis_client import get_client


logger = get_logger("brandforge.orchestrator.locks")

LOCK_KEY_TEMPLATE = "brandforge:{org_id}:generation:{resource_id}:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


class GenerationLockError(RuntimeError):
    """Raised when another generation already holds the lock for this resource."""

    code = "generation_locked"

    def __init__(self, org_id: str, resource_id: str, reason: str = "lock_held"):
        self.org_id = org_id
        self.resource_id = resource_id
        self.reason = reason
        super().__init__("Generation already in progress")


def generation_lock_key(org_id: str, resource_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(org_id=org_id, resource_id=resource_id)


@dataclass(frozen=True)
class GenerationLockHandle:
    org_id: str
    resource_id: str
    key: str
    token: str


class GenerationLockManager:
    backend = "base"

    def acquire(self, org_id: str, resource_id: str) -> Optional[GenerationLockHandle]:
        raise NotImplementedError

    def release(self, handle: GenerationLockHandle) -> bool:
        raise NotImplementedError

    @contextmanager
    def hold(self, org_id: str, resource_id: str) -> Iterator[GenerationLockHandle]:
        handle = self.acquire(org_id, resource_id)
        if handle is None:
            raise GenerationLockError(org_id, resource_id)
        try:
            yield handle
        finally:
            if not self.release(handle):
                logger.warning(
                    "generation_lock_release_missed",
                    backend=self.backend,
                    org_id=org_id,
                    resource_id=resource_id,
                )


class PostgresAdvisoryLockManager(GenerationLockManager):
    """Transaction-scoped advisory lock on the session's current transaction.

    PostgreSQL drops the lock when that transaction commits or rolls back, so a
    crashed process never leaks it.
    """

    backend = "postgres"

    def __init__(self, session: Session) -> None:
        self._session = session

    def acquire(self, org_id: str, resource_id: str) -> Optional[GenerationLockHandle]:
        acquired = self._session.execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:org_id), hashtext(:resource_id))"),
            {"org_id": org_id, "resource_id": resource_id},
        ).scalar()
        if not acquired:
            return None
        return GenerationLockHandle(
            org_id=org_id,
            resource_id=resource_id,
            key=generation_lock_key(org_id, resource_id),
            token="xact",
        )

    def release(self, handle: GenerationLockHandle) -> bool:
        # Released by the end of the owning transaction.
        del handle
        return True


class RedisLeaseLockManager(GenerationLockManager):
    """Lease lock using Redis SET NX EX with a compare-and-delete release."""

    backend = "redis"

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 300) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, org_id: str, resource_id: str) -> Optional[GenerationLockHandle]:
        key = generation_lock_key(org_id, resource_id)
        token = str(uuid.uuid4())
        acquired = self._redis.set(key, token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            return None
        return GenerationLockHandle(org_id=org_id, resource_id=resource_id, key=key, token=token)

    def release(self, handle: GenerationLockHandle) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, handle.key, handle.token)
        return int(released) == 1


def get_generation_lock_manager(session: Session, *, redis_client: Optional[Redis] = None) -> GenerationLockManager:
    settings = get_settings()
    backend = settings.generation_lock_backend.strip().lower()
    if backend == "postgres" and is_postgresql(session):
        return PostgresAdvisoryLockManager(session)
    return RedisLeaseLockManager(
        redis_client if redis_client is not None else get_client(),
        ttl_seconds=settings.generation_lock_ttl_seconds,
    )
