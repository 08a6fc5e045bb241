"""Generation locks, rate windows and guarded enqueue."""

from brandforge.orchestrator.guarded import try_enqueue_guarded
from brandforge.orchestrator.locks import (
    GenerationLockError,
    GenerationLockManager,
    PostgresAdvisoryLockManager,
    RedisLeaseLockManager,
    get_generation_lock_manager,
)
from brandforge.orchestrator.rate_window import GenerationRateLimitError, RateWindowDecision, check_generation_window

__all__ = [
    "GenerationLockError",
    "GenerationLockManager",
    "GenerationRateLimitError",
    "PostgresAdvisoryLockManager",
    "RateWindowDecision",
    "RedisLeaseLockManager",
    "check_generation_window",
    "get_generation_lock_manager",
    "try_enqueue_guarded",
]
