# runner.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .capabilities import Capability, JobContext, StepCall, registry
from .config import Settings
from .errors import MatrixError, StepExecutionError
from .guards import GuardVerdict, check
from .model import (
    SKIP_GUARD,
    SKIP_PREVIOUS_FAILURE,
    JobDescriptor,
    JobStatus,
    RunResult,
    Step,
    StepOutcome,
    StepRecord,
    Workflow,
)
from .templates import Scope, render, render_value
from .ui.console import get_console

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _prepare(ctx: JobContext, step: Step) -> StepCall:
    job_id = ctx.job.id
    kw = {"job": job_id, "step": step.name}

    env: Dict[str, str] = {}
    for k, v in ctx.workflow.env.items():
        env[k] = render(str(v), ctx.scope, **kw)
    for k, v in step.env.items():
        env[k] = render(str(v), ctx.scope, **kw)

    cwd = (ctx.workspace / render(step.cwd or ".", ctx.scope, **kw)).resolve()
    if not cwd.is_dir():
        raise StepExecutionError(job=job_id, step=step.name, message=f"cwd not found: {cwd}")

    return StepCall(
        name=step.name,
        run=render(step.run, ctx.scope, **kw) if step.run else None,
        cwd=cwd,
        args=render_value(dict(step.args), ctx.scope, **kw),
        env=env,
        timeout=step.timeout if step.timeout is not None else ctx.settings.default_timeout,
    )


def _run_step(ctx: JobContext, step: Step, caps: Mapping[str, Capability]) -> str:
    fn = caps.get(step.uses)
    if fn is None:
        raise StepExecutionError(
            job=ctx.job.id,
            step=step.name,
            message=f"unknown capability {step.uses!r}. Known: {sorted(caps)}",
        )
    call = _prepare(ctx, step)
    return fn(ctx, call)


def _failure_record(step: Step, exc: Exception, duration: float) -> StepRecord:
    if isinstance(exc, StepExecutionError):
        output = exc.output or ""
        if exc.message not in output:
            output = f"{output}\n{exc.message}".lstrip("\n")
        return StepRecord(step.name, StepOutcome.FAILED, output=output, exit_code=exc.exit_code, duration=duration)
    if isinstance(exc, MatrixError):
        # PackagingError / PublishError carry their context in str()
        return StepRecord(step.name, StepOutcome.FAILED, output=str(exc), duration=duration)
    return StepRecord(step.name, StepOutcome.FAILED, output=f"{type(exc).__name__}: {exc}", duration=duration)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def plan_job(job: JobDescriptor, workflow: Workflow) -> List[Tuple[Step, GuardVerdict]]:
    """Guard decisions for every step of one job, without running anything."""
    return [(step, check(step.guard, job)) for step in workflow.steps]


def run_job(
    job: JobDescriptor,
    workflow: Workflow,
    settings: Settings,
    capabilities: Optional[Mapping[str, Capability]] = None,
) -> RunResult:
    """
    Run the pipeline for a single job, strictly in declared order.

    Never raises: any failure ends up in the returned RunResult. After the
    first failed step the remaining steps are recorded as skipped.
    """
    caps = capabilities if capabilities is not None else registry()
    console = get_console()
    result = RunResult(job=job)
    console.print_job_start(job.display_name)

    workspace: Path = settings.workspace_for(job.id)
    ctx = JobContext(
        job=job,
        workflow=workflow,
        settings=settings,
        workspace=workspace,
        scope=Scope(job=job, constants=workflow.constants, run_id=settings.run_id, workspace=str(workspace)),
    )

    failed = False
    try:
        workspace.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("[%s] cannot create workspace %s: %s", job.id, workspace, e)
        result.records = [StepRecord(s.name, StepOutcome.SKIPPED, reason=SKIP_PREVIOUS_FAILURE) for s in workflow.steps]
        result.records.insert(0, StepRecord("workspace", StepOutcome.FAILED, output=str(e)))
        result.status = JobStatus.FAILED
        console.print_failure(job.id, str(e), is_job=True)
        return result

    for step in workflow.steps:
        if failed:
            result.records.append(StepRecord(step.name, StepOutcome.SKIPPED, reason=SKIP_PREVIOUS_FAILURE))
            continue

        verdict = check(step.guard, job)
        if not verdict.passed:
            reason = SKIP_GUARD if verdict.diagnostic is None else f"{SKIP_GUARD}: {verdict.diagnostic}"
            result.records.append(StepRecord(step.name, StepOutcome.SKIPPED, reason=reason))
            console.print_step_skipped(job.id, step.name, reason)
            continue

        console.print_step(job.id, step.name)
        started = time.monotonic()
        try:
            output = _run_step(ctx, step, caps)
        except Exception as e:
            record = _failure_record(step, e, time.monotonic() - started)
            result.records.append(record)
            failed = True
            logger.debug("[%s] step %r failed", job.id, step.name, exc_info=True)
            console.print_failure(step.name, record.output, exit_code=record.exit_code)
            continue

        result.records.append(
            StepRecord(step.name, StepOutcome.SUCCEEDED, output=output, duration=time.monotonic() - started)
        )

    if failed:
        result.status = JobStatus.FAILED
    else:
        for action in ctx.post_actions:
            try:
                action()
            except Exception:
                logger.exception("[%s] post-job action failed", job.id)
        result.status = JobStatus.SUCCEEDED

    result.artifact = ctx.artifact
    result.published = ctx.published
    console.print_job_done(job.id, result.status.value)
    return result
