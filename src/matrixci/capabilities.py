# capabilities.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import git
from .cache import CacheStore
from .config import Settings
from .errors import StepExecutionError
from .model import Artifact, JobDescriptor, PublishedArtifact, Workflow
from .packager import package
from .publisher import Publisher
from .templates import Scope

logger = logging.getLogger(__name__)

@dataclass
class JobContext:
    """Per-job state shared by the steps of one job, and only that job."""
    job: JobDescriptor
    workflow: Workflow
    settings: Settings
    workspace: Path
    scope: Scope
    artifact: Optional[Artifact] = None
    published: Optional[PublishedArtifact] = None
    post_actions: List[Callable[[], None]] = field(default_factory=list)


@dataclass(frozen=True)
class StepCall:
    """A step with every template already rendered for the current job."""
    name: str
    run: Optional[str]
    cwd: Path
    args: Mapping[str, Any]
    env: Mapping[str, str]
    timeout: Optional[float]


Capability = Callable[[JobContext, StepCall], str]


def _require(ctx: JobContext, call: StepCall, key: str) -> Any:
    value = call.args.get(key)
    if value in (None, ""):
        raise StepExecutionError(job=ctx.job.id, step=call.name, message=f"missing required argument {key!r}")
    return value


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


# ----------------------------------------------------------------------
# run: shell command
# ----------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def run_shell(ctx: JobContext, call: StepCall) -> str:
    """
    Run `call.run` through the shell inside the job workspace.

    The process gets its own session so a timeout kills the whole tree and
    a Ctrl-C aimed at matrixci does not tear down in-flight steps.
    """
    if not call.run:
        raise StepExecutionError(job=ctx.job.id, step=call.name, message="no command to run")

    env = os.environ.copy()
    env.update(call.env)

    try:
        proc = subprocess.Popen(
            call.run,
            shell=True,
            cwd=str(call.cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        raise StepExecutionError(job=ctx.job.id, step=call.name, message=f"could not start process: {e}") from e

    try:
        out, _ = proc.communicate(timeout=call.timeout)
    except subprocess.TimeoutExpired:
        _kill(proc)
        out, _ = proc.communicate()
        raise StepExecutionError(
            job=ctx.job.id,
            step=call.name,
            message=f"timed out after {call.timeout}s",
            exit_code=proc.returncode,
            output=out or "",
        ) from None

    if proc.returncode != 0:
        raise StepExecutionError(
            job=ctx.job.id,
            step=call.name,
            message=f"command exited with status {proc.returncode}: {call.run}",
            exit_code=proc.returncode,
            output=out or "",
        )
    return out or ""


# ----------------------------------------------------------------------
# checkout: populate the workspace with the project source
# ----------------------------------------------------------------------

def _ignore_roots(*roots: Path) -> Callable[[str, List[str]], List[str]]:
    resolved = {r.resolve() for r in roots}

    def _ignore(directory: str, names: List[str]) -> List[str]:
        d = Path(directory).resolve()
        return [n for n in names if n == ".git" or (d / n) in resolved]

    return _ignore


def checkout(ctx: JobContext, call: StepCall) -> str:
    source = str(call.args.get("repository") or ctx.settings.source)
    ref = call.args.get("ref")
    src_path = Path(source).expanduser()

    if src_path.is_dir() and not git.is_repo(src_path):
        if ref:
            raise StepExecutionError(
                job=ctx.job.id, step=call.name, message=f"cannot check out ref {ref!r}: {source} is not a git repository"
            )
        try:
            shutil.copytree(
                src_path,
                ctx.workspace,
                dirs_exist_ok=True,
                ignore=_ignore_roots(ctx.settings.workspace_root, ctx.settings.cache_root),
            )
        except (OSError, shutil.Error) as e:
            raise StepExecutionError(job=ctx.job.id, step=call.name, message=f"copy failed: {e}") from e
        return f"copied {src_path.resolve()} into {ctx.workspace}\n"

    try:
        sha = git.clone_or_update(source, ctx.workspace, ref=ref)
    except git.GitError as e:
        raise StepExecutionError(job=ctx.job.id, step=call.name, message=str(e)) from e
    return f"checked out {source} at {sha}\n"


# ----------------------------------------------------------------------
# cache: restore now, save after the job succeeds
# ----------------------------------------------------------------------

def cache(ctx: JobContext, call: StepCall) -> str:
    key = str(call.args.get("key") or ctx.job.id)
    paths = _as_list(call.args.get("paths"))
    inputs = _as_list(call.args.get("inputs"))
    keep = int(call.args.get("keep", ctx.settings.cache_keep))

    if not paths:
        raise StepExecutionError(job=ctx.job.id, step=call.name, message="cache step declares no paths")

    try:
        store = CacheStore(ctx.settings.cache_root)
        hit = store.restore(key, paths, inputs, ctx.workspace)
    except ValueError as e:
        raise StepExecutionError(job=ctx.job.id, step=call.name, message=str(e)) from e
    except OSError as e:
        logger.warning("[%s] cache %s: unavailable, building without it: %s", ctx.job.id, key, e)
        return f"cache {key}: unavailable ({e})\n"

    def _save() -> None:
        try:
            digest = store.save(key, paths, inputs, ctx.workspace)
            store.prune(key, keep=keep)
        except (OSError, tarfile.TarError) as e:
            logger.warning("[%s] cache %s: save failed: %s", ctx.job.id, key, e)
            return
        logger.info("[%s] cache %s: saved (%s...)", ctx.job.id, key, digest[:12])

    if not hit.hit:
        ctx.post_actions.append(_save)
    return f"cache {key}: {hit.reason}\n"


# ----------------------------------------------------------------------
# package / publish
# ----------------------------------------------------------------------

def package_binary(ctx: JobContext, call: StepCall) -> str:
    binary = str(_require(ctx, call, "binary"))
    archive = str(_require(ctx, call, "archive"))
    source_dir = ctx.workspace / str(call.args.get("source_dir") or ".")
    fmt = ctx.workflow.archive_format.resolve(ctx.job)

    ctx.artifact = package(
        ctx.job,
        source_dir=source_dir,
        binary=binary,
        archive=archive,
        fmt=fmt,
        dest_dir=ctx.workspace,
    )
    return f"packaged {binary} into {ctx.artifact.name} ({fmt.value})\n"


def publish(ctx: JobContext, call: StepCall) -> str:
    identity = str(call.args.get("name") or ctx.job.id)
    publisher = Publisher(ctx.settings.store)
    ctx.published = publisher.publish(ctx.settings.run_id, identity, ctx.artifact)
    return f"published {identity} -> {ctx.published.location}\n"


BUILTIN_CAPABILITIES: Dict[str, Capability] = {
    "run": run_shell,
    "checkout": checkout,
    "cache": cache,
    "package": package_binary,
    "publish": publish,
}


def registry(extra: Optional[Mapping[str, Capability]] = None) -> Dict[str, Capability]:
    caps = dict(BUILTIN_CAPABILITIES)
    if extra:
        caps.update(extra)
    return caps
