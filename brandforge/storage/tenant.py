"""Organization-scoped DB context helpers."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from brandforge.storage.db import is_postgresql


def set_org_context(session: Session, org_id: Optional[str]) -> None:
    """Set organization context for PostgreSQL RLS policies.

    The setting is connection-scoped because job handlers commit several times;
    callers pair it with ``reset_org_context`` before the connection goes back to the pool.
    """

    if not is_postgresql(session):
        return

    value = org_id or ""
    session.execute(
        text("SELECT set_config('app.current_org_id', :org_id, false)"),
        {"org_id": value},
    )


def reset_org_context(session: Session) -> None:
    set_org_context(session=session, org_id=None)


def release_org_context(session: Session) -> None:
    """Drop any open transaction and clear the org setting before the connection is reused."""

    session.rollback()
    if not is_postgresql(session):
        return
    reset_org_context(session)
    session.commit()
