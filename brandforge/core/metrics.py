"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_jobs_enqueued_total: Dict[str, int] = defaultdict(int)
_jobs_finished_total: Dict[Tuple[str, str], int] = defaultdict(int)
_section_failures_total: Dict[Tuple[str, str], int] = defaultdict(int)
_tokens_billed_total: Dict[str, int] = defaultdict(int)
_guarded_rejections_total: Dict[str, int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_job_enqueued(*, job_type: str) -> None:
    with _lock:
        _jobs_enqueued_total[_normalize_label(job_type)] += 1


def record_job_finished(*, job_type: str, status: str) -> None:
    with _lock:
        _jobs_finished_total[(_normalize_label(job_type), _normalize_label(status))] += 1


def record_section_failure(*, section_key: str, reason: str) -> None:
    with _lock:
        _section_failures_total[(_normalize_label(section_key), _normalize_label(reason))] += 1


def record_tokens_billed(*, preset: str, tokens: int) -> None:
    if tokens <= 0:
        return
    with _lock:
        _tokens_billed_total[_normalize_label(preset)] += int(tokens)


def record_guarded_rejection(*, reason: str) -> None:
    with _lock:
        _guarded_rejections_total[_normalize_label(reason)] += 1


def _counter_block(name: str, help_text: str, rows: list[str]) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} counter", *rows]


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        jobs_enqueued = dict(_jobs_enqueued_total)
        jobs_finished = dict(_jobs_finished_total)
        section_failures = dict(_section_failures_total)
        tokens_billed = dict(_tokens_billed_total)
        guarded_rejections = dict(_guarded_rejections_total)

    lines = [
        "# HELP brandforge_build_info Build metadata.",
        "# TYPE brandforge_build_info gauge",
        (
            f'brandforge_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP brandforge_process_uptime_seconds Process uptime in seconds.",
        "# TYPE brandforge_process_uptime_seconds gauge",
        f"brandforge_process_uptime_seconds {uptime:.6f}",
        "# HELP brandforge_http_requests_total Total HTTP requests.",
        "# TYPE brandforge_http_requests_total counter",
    ]

    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            (
                f'brandforge_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP brandforge_http_request_duration_seconds Request duration summary.",
            "# TYPE brandforge_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'brandforge_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'brandforge_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        _counter_block(
            "brandforge_jobs_enqueued_total",
            "Jobs created by the producer.",
            [
                f'brandforge_jobs_enqueued_total{{type="{_escape_label(job_type)}"}} {value}'
                for job_type, value in sorted(jobs_enqueued.items())
            ],
        )
    )
    lines.extend(
        _counter_block(
            "brandforge_jobs_finished_total",
            "Jobs finalized by the worker.",
            [
                (
                    f'brandforge_jobs_finished_total{{type="{_escape_label(job_type)}",'
                    f'status="{_escape_label(status)}"}} {value}'
                )
                for (job_type, status), value in sorted(jobs_finished.items())
            ],
        )
    )
    lines.extend(
        _counter_block(
            "brandforge_section_failures_total",
            "Sections that failed inside a multi-section job.",
            [
                (
                    f'brandforge_section_failures_total{{section="{_escape_label(section)}",'
                    f'reason="{_escape_label(reason)}"}} {value}'
                )
                for (section, reason), value in sorted(section_failures.items())
            ],
        )
    )
    lines.extend(
        _counter_block(
            "brandforge_tokens_billed_total",
            "Billed tokens recorded by preset.",
            [
                f'brandforge_tokens_billed_total{{preset="{_escape_label(preset)}"}} {value}'
                for preset, value in sorted(tokens_billed.items())
            ],
        )
    )
    lines.extend(
        _counter_block(
            "brandforge_guarded_rejections_total",
            "Guarded enqueue attempts rejected by lock or rate window.",
            [
                f'brandforge_guarded_rejections_total{{reason="{_escape_label(reason)}"}} {value}'
                for reason, value in sorted(guarded_rejections.items())
            ],
        )
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _jobs_enqueued_total.clear()
        _jobs_finished_total.clear()
        _section_failures_total.clear()
        _tokens_billed_total.clear()
        _guarded_rejections_total.clear()
    _started_at = time.time()
