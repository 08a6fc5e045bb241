"""CLI entrypoint for the job worker."""

from __future__ import annotations

import argparse
import json
import signal
import threading

from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger
from brandforge.core.observability import init_sentry
from brandforge.jobs.worker import JobWorker
from brandforge.storage.db import get_session_factory, load_models


logger = get_logger("brandforge.jobs.manager")


def build_worker() -> JobWorker:
    load_models()
    return JobWorker(session_factory=get_session_factory(), settings=get_settings())


def run_worker_once() -> dict:
    with build_worker() as worker:
        job_id = worker.run_once()
        return {"worker_id": worker.worker_id, "job_id": job_id, "processed": job_id is not None}


def run_worker_forever(*, poll_interval: float | None = None) -> None:
    settings = get_settings()
    if poll_interval is not None:
        settings = settings.model_copy(update={"worker_poll_interval_seconds": poll_interval})

    stop_event = threading.Event()

    def _stop(signum, frame) -> None:
        del frame
        logger.info("worker_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    load_models()
    with JobWorker(session_factory=get_session_factory(), settings=settings) as worker:
        worker.run_forever(stop_event)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the BrandForge job worker.")
    parser.add_argument("--once", action="store_true", help="Claim and process at most one job, then exit.")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds to wait when the queue is empty.")
    args = parser.parse_args()
    if args.poll_interval is not None and args.poll_interval <= 0:
        parser.error("--poll-interval must be positive")

    init_sentry()
    if args.once:
        print(json.dumps(run_worker_once(), ensure_ascii=True, separators=(",", ":"), sort_keys=True))
        return
    run_worker_forever(poll_interval=args.poll_interval)


if __name__ == "__main__":
    main()
