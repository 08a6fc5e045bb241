"""Append-only audit trail for operator and billing actions."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from brandforge.storage.models import AuditLog


def record_audit_event(
    session: Session,
    *,
    org_id: str,
    action: str,
    target_type: str,
    target_id: str,
    actor: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Add an audit row to the current transaction; the caller commits."""

    entry = AuditLog(
        org_id=org_id,
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details_json=json.dumps(details or {}, separators=(",", ":"), ensure_ascii=True, sort_keys=True),
    )
    session.add(entry)
    return entry
