"""Map domain errors onto HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from brandforge.billing.purchases import AddonNotAllowedError, IdempotencyConflictError, PurchaseIntentError
from brandforge.billing.usage import BudgetExceededError
from brandforge.jobs.contracts import JobValidationError
from brandforge.jobs.store import InvalidJobTransitionError
from brandforge.orchestrator.locks import GenerationLockError
from brandforge.orchestrator.rate_window import GenerationRateLimitError


def _error_body(code: str, message: str, **extra) -> dict:
    payload = {"error": code, "detail": message}
    payload.update(extra)
    return payload


async def _not_found(request: Request, exc: LookupError) -> JSONResponse:
    del request
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_body(getattr(exc, "code", "not_found"), str(exc)),
    )


async def _validation(request: Request, exc: JobValidationError) -> JSONResponse:
    del request
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc.code, str(exc)))


async def _invalid_transition(request: Request, exc: InvalidJobTransitionError) -> JSONResponse:
    del request
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(exc.code, str(exc), status=exc.status),
    )


async def _locked(request: Request, exc: GenerationLockError) -> JSONResponse:
    del request
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body(exc.code, str(exc), reason=exc.reason),
    )


async def _rate_limited(request: Request, exc: GenerationRateLimitError) -> JSONResponse:
    del request
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=_error_body(
            exc.code,
            str(exc),
            limit=exc.limit,
            used=exc.used,
            retry_after_seconds=exc.retry_after_seconds,
        ),
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


async def _budget_exceeded(request: Request, exc: BudgetExceededError) -> JSONResponse:
    del request
    budget = exc.budget
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=_error_body(
            exc.code,
            "Token budget exceeded",
            plan=budget.plan,
            requested=budget.requested,
            remaining=budget.remaining,
            can_purchase_more=budget.can_purchase_more,
            suggest_upgrade=budget.suggest_upgrade,
            days_until_reset=budget.days_until_reset,
        ),
    )


async def _purchase_invalid(request: Request, exc: PurchaseIntentError) -> JSONResponse:
    del request
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc.code, str(exc)))


async def _addon_not_allowed(request: Request, exc: AddonNotAllowedError) -> JSONResponse:
    del request
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=_error_body(exc.code, str(exc)))


async def _idempotency_conflict(request: Request, exc: IdempotencyConflictError) -> JSONResponse:
    del request
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_body(exc.code, str(exc)))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LookupError, _not_found)
    app.add_exception_handler(JobValidationError, _validation)
    app.add_exception_handler(InvalidJobTransitionError, _invalid_transition)
    app.add_exception_handler(GenerationLockError, _locked)
    app.add_exception_handler(GenerationRateLimitError, _rate_limited)
    app.add_exception_handler(BudgetExceededError, _budget_exceeded)
    app.add_exception_handler(AddonNotAllowedError, _addon_not_allowed)
    app.add_exception_handler(PurchaseIntentError, _purchase_invalid)
    app.add_exception_handler(IdempotencyConflictError, _idempotency_conflict)
