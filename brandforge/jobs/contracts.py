"""Job kinds, statuses and the versioned payload contract shared by producer and worker."""

from __future__ import annotations

from enum import Enum
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


PAYLOAD_SCHEMA_VERSION = 1


class JobType(str, Enum):
    GENERATE_OUTPUT = "GENERATE_OUTPUT"
    REGENERATE_OUTPUT = "REGENERATE_OUTPUT"
    BUSINESS_PLAN_GENERATE = "BUSINESS_PLAN_GENERATE"
    PROCESS_LIBRARY_FILE = "PROCESS_LIBRARY_FILE"
    BUILD_BRAND_PACK = "BUILD_BRAND_PACK"
    BUILD_STRATEGY_PACK = "BUILD_STRATEGY_PACK"
    BUILD_BRAND_MANUAL = "BUILD_BRAND_MANUAL"
    BATCH_LOGOS = "BATCH_LOGOS"
    BATCH_MOCKUPS = "BATCH_MOCKUPS"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
FINISHED_JOB_STATUSES = (JobStatus.DONE.value, JobStatus.FAILED.value)

IDEMPOTENT_JOB_TYPES = frozenset({JobType.GENERATE_OUTPUT, JobType.REGENERATE_OUTPUT})
GUARDED_JOB_TYPES = frozenset({JobType.BUSINESS_PLAN_GENERATE})
FILE_JOB_TYPES = frozenset({JobType.PROCESS_LIBRARY_FILE})
BATCH_JOB_TYPES = frozenset(
    {
        JobType.BUILD_BRAND_PACK,
        JobType.BUILD_STRATEGY_PACK,
        JobType.BUILD_BRAND_MANUAL,
        JobType.BATCH_LOGOS,
        JobType.BATCH_MOCKUPS,
    }
)


class JobValidationError(ValueError):
    """Raised when a job cannot be created from the supplied input."""

    code = "validation_error"


class JobPayloadDecodeError(ValueError):
    """Raised at the worker boundary when a stored payload does not match its job type."""

    code = "payload_invalid"


class StageGenerationPayload(BaseModel):
    kind: Literal["stage_generation"] = "stage_generation"
    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    stage_id: str
    output_id: str
    stage_key: str
    project_name: str
    requested_by: Optional[str] = None
    preset: Literal["fast", "balanced", "quality"] = "balanced"


class BusinessPlanPayload(BaseModel):
    kind: Literal["business_plan"] = "business_plan"
    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    requested_by: Optional[str] = None
    section_keys: list[str] = Field(default_factory=list)
    preset: Literal["fast", "balanced", "quality"] = "balanced"


class FileJobPayload(BaseModel):
    kind: Literal["file"] = "file"
    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    file_id: str


class BatchJobPayload(BaseModel):
    kind: Literal["batch"] = "batch"
    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    requested_by: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    Union[StageGenerationPayload, BusinessPlanPayload, FileJobPayload, BatchJobPayload],
    Field(discriminator="kind"),
]

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobPayload)

_EXPECTED_KIND: Dict[JobType, str] = {
    JobType.GENERATE_OUTPUT: "stage_generation",
    JobType.REGENERATE_OUTPUT: "stage_generation",
    JobType.BUSINESS_PLAN_GENERATE: "business_plan",
    JobType.PROCESS_LIBRARY_FILE: "file",
    **{job_type: "batch" for job_type in BATCH_JOB_TYPES},
}


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def parse_job_type(value: str) -> JobType:
    try:
        return JobType(str(value).strip().upper())
    except ValueError as exc:
        raise JobValidationError(f"unknown_job_type:{value}") from exc


def expected_payload_kind(job_type: JobType) -> str:
    return _EXPECTED_KIND[job_type]


def encode_job_payload(job_type: JobType, payload: BaseModel) -> str:
    """Serialize a payload after checking its tag against the job type."""

    kind = getattr(payload, "kind", None)
    if kind != expected_payload_kind(job_type):
        raise JobValidationError(f"payload_kind_mismatch:{job_type.value}:{kind}")
    return _json_dumps(payload.model_dump(mode="json"))


def decode_job_payload(job_type: JobType | str, raw: str | Dict[str, Any] | None):
    """Decode a stored payload into its typed variant.

    Raises ``JobPayloadDecodeError`` when the JSON is malformed, when the variant
    fails validation or when its tag does not belong to ``job_type``.
    """

    resolved_type = job_type if isinstance(job_type, JobType) else parse_job_type(job_type)
    if raw is None:
        raise JobPayloadDecodeError("payload_missing")
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise JobPayloadDecodeError("payload_not_json") from exc
    else:
        data = dict(raw)

    try:
        payload = _PAYLOAD_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise JobPayloadDecodeError(f"payload_invalid:{exc.error_count()}_errors") from exc

    if payload.kind != expected_payload_kind(resolved_type):
        raise JobPayloadDecodeError(f"payload_kind_mismatch:{resolved_type.value}:{payload.kind}")
    return payload
