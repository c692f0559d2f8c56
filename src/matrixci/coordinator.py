# coordinator.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Mapping, Optional

from .capabilities import Capability
from .config import Settings
from .model import JobDescriptor, JobStatus, RunReport, RunResult, Workflow
from .runner import run_job

logger = logging.getLogger(__name__)


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def run_matrix(
    jobs: List[JobDescriptor],
    workflow: Workflow,
    settings: Settings,
    *,
    max_workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    capabilities: Optional[Mapping[str, Capability]] = None,
    on_result: Optional[Callable[[RunResult], None]] = None,
) -> RunReport:
    """
    Run every job to completion and collect their results.

    Jobs are independent: a failed job never stops, cancels or alters any
    other job. Up to `max_workers` jobs run at once; with max_workers=1 the
    results are identical, only slower.

    Setting `cancel` stops dispatching. Jobs already running finish normally;
    jobs never started are reported as cancelled.

    Results are returned in expansion order regardless of completion order.
    """
    if max_workers is None:
        max_workers = default_workers()
    max_workers = max(1, max_workers)
    cancel = cancel or threading.Event()

    pending: List[JobDescriptor] = list(jobs)
    pending.reverse()  # pop() from the end keeps declaration order
    results: Dict[int, RunResult] = {}
    in_flight: Dict[Future, JobDescriptor] = {}

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matrixci-job") as pool:
        while pending or in_flight:
            # schedule while there is room
            while pending and len(in_flight) < max_workers and not cancel.is_set():
                job = pending.pop()
                fut = pool.submit(run_job, job, workflow, settings, capabilities)
                in_flight[fut] = job

            if cancel.is_set() and pending:
                logger.warning("run cancelled; %d job(s) not started", len(pending))
                for job in pending:
                    results[job.index] = RunResult(job=job, status=JobStatus.CANCELLED)
                pending.clear()

            if not in_flight:
                break

            # wake up periodically so a cancel request is noticed promptly
            done, _ = wait(list(in_flight), timeout=0.5, return_when=FIRST_COMPLETED)
            for fut in done:
                job = in_flight.pop(fut)
                result = fut.result()  # run_job converts failures into results
                results[job.index] = result
                if on_result is not None:
                    on_result(result)

    ordered = [results[j.index] for j in jobs]
    report = RunReport(run_id=settings.run_id, results=ordered)
    if not report.ok:
        logger.info("run %s finished with failing jobs: %s", settings.run_id, ", ".join(report.failed_jobs))
    return report
