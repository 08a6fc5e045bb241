"""Append-only output versions with a single-approved-version state machine."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from brandforge.core.logger import get_logger
from brandforge.storage.audit import record_audit_event
from brandforge.storage.models import Output, OutputVersion, Stage


logger = get_logger("brandforge.outputs")

VERSION_TYPE_GENERATED = "GENERATED"
VERSION_TYPE_EDITED = "EDITED"

VERSION_STATUS_GENERATED = "GENERATED"
VERSION_STATUS_APPROVED = "APPROVED"
VERSION_STATUS_OBSOLETE = "OBSOLETE"


class OutputNotFoundError(LookupError):
    code = "not_found"


class VersionNotFoundError(LookupError):
    code = "not_found"


@dataclass(frozen=True)
class VersionView:
    id: str
    output_id: str
    version: int
    type: str
    status: str
    provider: Optional[str]
    model: Optional[str]
    prompt_set_version: Optional[str]
    content: Dict[str, Any]
    metadata: Dict[str, Any]
    created_by: Optional[str]


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _json_loads(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    loaded = json.loads(raw)
    return loaded if isinstance(loaded, dict) else {"value": loaded}


def version_view(version: OutputVersion) -> VersionView:
    return VersionView(
        id=version.id,
        output_id=version.output_id,
        version=version.version,
        type=version.type,
        status=version.status,
        provider=version.provider,
        model=version.model,
        prompt_set_version=version.prompt_set_version,
        content=_json_loads(version.content_json),
        metadata=_json_loads(version.metadata_json),
        created_by=version.created_by,
    )


def get_output_for_org(session: Session, *, org_id: str, output_id: str) -> Output:
    output = session.get(Output, output_id)
    if output is None or output.org_id != org_id:
        raise OutputNotFoundError(f"Output not found: {output_id}")
    return output


def ensure_output(session: Session, *, org_id: str, project_id: str, stage_id: str) -> Tuple[Output, bool]:
    existing = session.scalar(select(Output).where(Output.project_id == project_id, Output.stage_id == stage_id))
    if existing is not None:
        return existing, False
    output = Output(org_id=org_id, project_id=project_id, stage_id=stage_id)
    session.add(output)
    session.flush()
    return output, True


def next_version_number(session: Session, *, output_id: str) -> int:
    current = session.scalar(select(func.max(OutputVersion.version)).where(OutputVersion.output_id == output_id))
    return int(current or 0) + 1


def has_versions(session: Session, *, output_id: str) -> bool:
    return next_version_number(session, output_id=output_id) > 1


def create_generated_version(
    session: Session,
    *,
    output_id: str,
    content: Dict[str, Any],
    provider: str,
    model: str,
    prompt_set_version: str,
    metadata: Dict[str, Any],
    created_by: Optional[str] = None,
) -> OutputVersion:
    """Add the next GENERATED version. Flush only; the caller commits."""

    version = OutputVersion(
        output_id=output_id,
        version=next_version_number(session, output_id=output_id),
        content_json=_json_dumps(content),
        provider=provider,
        model=model,
        prompt_set_version=prompt_set_version,
        type=VERSION_TYPE_GENERATED,
        status=VERSION_STATUS_GENERATED,
        metadata_json=_json_dumps(metadata),
        created_by=created_by,
    )
    session.add(version)
    session.flush()
    return version


def create_edited_version(
    session: Session,
    *,
    org_id: str,
    output_id: str,
    content: Dict[str, Any],
    created_by: Optional[str] = None,
) -> OutputVersion:
    """Append a manual edit as a new EDITED version and commit it."""

    get_output_for_org(session, org_id=org_id, output_id=output_id)

    def _append() -> OutputVersion:
        edited = OutputVersion(
            output_id=output_id,
            version=next_version_number(session, output_id=output_id),
            content_json=_json_dumps(content),
            type=VERSION_TYPE_EDITED,
            status=VERSION_STATUS_GENERATED,
            metadata_json=_json_dumps({"source": "manual_edit"}),
            created_by=created_by,
        )
        session.add(edited)
        session.commit()
        return edited

    try:
        version = _append()
    except IntegrityError:
        # A concurrent writer took this version number; renumber once.
        session.rollback()
        version = _append()
    logger.info("output_version_edited", output_id=output_id, version=version.version)
    return version


def list_versions(session: Session, *, org_id: str, output_id: str) -> List[OutputVersion]:
    get_output_for_org(session, org_id=org_id, output_id=output_id)
    statement = (
        select(OutputVersion)
        .where(OutputVersion.output_id == output_id)
        .order_by(OutputVersion.version.desc())
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(statement).all())


def get_latest_version(session: Session, *, output_id: str) -> Optional[OutputVersion]:
    statement = (
        select(OutputVersion)
        .where(OutputVersion.output_id == output_id)
        .order_by(OutputVersion.version.desc())
        .limit(1)
    )
    return session.scalar(statement)


def count_approved(session: Session, *, output_id: str) -> int:
    count = session.scalar(
        select(func.count(OutputVersion.id)).where(
            OutputVersion.output_id == output_id,
            OutputVersion.status == VERSION_STATUS_APPROVED,
        )
    )
    return int(count or 0)


def approve_version(
    session: Session,
    *,
    org_id: str,
    output_id: str,
    version: int,
    actor: Optional[str] = None,
) -> OutputVersion:
    """Approve one version, demoting any previously approved version to OBSOLETE.

    Demotion, approval, the stage status change and the audit row commit together.
    """

    output = get_output_for_org(session, org_id=org_id, output_id=output_id)
    target = session.scalar(
        select(OutputVersion).where(OutputVersion.output_id == output_id, OutputVersion.version == version)
    )
    if target is None:
        raise VersionNotFoundError(f"Version {version} not found for output {output_id}")

    try:
        demoted = session.execute(
            update(OutputVersion)
            .where(
                OutputVersion.output_id == output_id,
                OutputVersion.status == VERSION_STATUS_APPROVED,
                OutputVersion.id != target.id,
            )
            .values(status=VERSION_STATUS_OBSOLETE)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            update(OutputVersion)
            .where(OutputVersion.id == target.id)
            .values(status=VERSION_STATUS_APPROVED)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            update(Stage)
            .where(Stage.id == output.stage_id)
            .values(status="APPROVED")
            .execution_options(synchronize_session=False)
        )
        record_audit_event(
            session,
            org_id=org_id,
            actor=actor,
            action="OUTPUT_VERSION_APPROVED",
            target_type="output_version",
            target_id=target.id,
            details={"output_id": output_id, "version": version, "demoted": int(demoted.rowcount or 0)},
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("output_version_approved", output_id=output_id, version=version, actor=actor)
    return session.get(OutputVersion, target.id, populate_existing=True)


def approve_latest_version(
    session: Session,
    *,
    org_id: str,
    output_id: str,
    actor: Optional[str] = None,
) -> OutputVersion:
    get_output_for_org(session, org_id=org_id, output_id=output_id)
    latest = get_latest_version(session, output_id=output_id)
    if latest is None:
        raise VersionNotFoundError(f"Output {output_id} has no versions")
    return approve_version(session, org_id=org_id, output_id=output_id, version=latest.version, actor=actor)
