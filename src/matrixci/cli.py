# cli.py
from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path

import click

from matrixci.cache import DEFAULT_CACHE_DIR
from matrixci.config import DEFAULT_ARTIFACT_DIR, DEFAULT_WORKSPACE_DIR, Settings, load_workflow, new_run_id
from matrixci.coordinator import run_matrix
from matrixci.errors import DeclarationError
from matrixci.log import configure_logging
from matrixci.matrix import expand
from matrixci.publisher import HttpArtifactStore, LocalArtifactStore
from matrixci.runner import plan_job
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_NAMES = ("matrixci_workflow.py", "matrixci.toml", "matrixci.json")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {current_dir / n for n in DEFAULT_WORKFLOW_NAMES if (current_dir / n).exists()}
    found.update(current_dir.glob("*_workflow.py"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *[f"  {n}" for n in DEFAULT_WORKFLOW_NAMES], "  *_workflow.py"],
            suggestion="Create matrixci_workflow.py, or specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow matrixci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(workflow_arg: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        wf = load_workflow(workflow_path)
        jobs = expand(wf.axes, wf.exclude, wf.job_name)
    except (DeclarationError, ValueError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(1)
    return workflow_path, wf, jobs


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step output)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    show_default=True,
    envvar="MATRIXCI_LOG_LEVEL",
    help="Level for internal diagnostics written to stderr",
)
@click.pass_context
def cli(ctx, debug, log_level):
    """matrixci: expand a build matrix and run every job in isolation."""
    set_console(Console(debug=debug))
    configure_logging(log_level, debug=debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .json or .toml)")
@click.pass_context
def plan(ctx, workflow):
    """Show the expanded jobs and which steps each would run."""
    console = get_console()
    workflow_path, wf, jobs = _load(workflow)
    console.print_header(f"{wf.name}: {len(jobs)} job(s) from {workflow_path.name}")
    for job in jobs:
        console.print_plan(job, plan_job(job, wf))


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .json or .toml)")
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Number of jobs run in parallel")
@click.option("--source", default=".", show_default=True, help="Project checked out into every job workspace")
@click.option("--work-dir", default=DEFAULT_WORKSPACE_DIR, show_default=True, envvar="MATRIXCI_WORK_DIR", help="Root for per-job workspaces")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, envvar="MATRIXCI_CACHE_DIR", help="Build cache directory")
@click.option("--artifact-dir", default=DEFAULT_ARTIFACT_DIR, show_default=True, envvar="MATRIXCI_ARTIFACT_DIR", help="Local artifact store (ignored with --store-url)")
@click.option("--store-url", default=None, envvar="MATRIXCI_STORE_URL", help="Publish to a matrixci artifact store service")
@click.option("--timeout", default=None, type=float, help="Default per-step timeout in seconds")
@click.option("--run-id", default=None, help="Run identifier (random by default)")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run results as JSON")
@click.pass_context
def run(ctx, workflow, workers, source, work_dir, cache_dir, artifact_dir, store_url, timeout, run_id, report_json):
    """Run every job of the matrix."""
    console = get_console()
    workflow_path, wf, jobs = _load(workflow)

    store = HttpArtifactStore(store_url) if store_url else LocalArtifactStore(artifact_dir)
    settings = Settings(
        run_id=run_id or new_run_id(),
        source=source,
        workspace_root=Path(work_dir),
        cache_root=Path(cache_dir),
        store=store,
        default_timeout=timeout,
    )

    console.print_run_started(workflow=f"{wf.name} ({workflow_path.name})", run_id=settings.run_id, job_count=len(jobs))
    console.print_debug(f"workspaces: {settings.workspace_root}  cache: {settings.cache_root}  store: {type(store).__name__}")

    # Ctrl-C / SIGTERM: stop dispatching, let running jobs finish.
    cancel = threading.Event()

    def _signal_handler(signum, frame):
        console.print_info(f"\nReceived signal {signum}, finishing running jobs...")
        cancel.set()

    previous = {s: signal.signal(s, _signal_handler) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = run_matrix(jobs, wf, settings, max_workers=workers, cancel=cancel)
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)

    console.print_results(report)

    if report_json:
        Path(report_json).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")

    if report.cancelled:
        sys.exit(130)
    if not report.ok:
        sys.exit(1)


@cli.command("serve-store")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve_store(host, port):
    """Serve the artifact store API (settings from MATRIXCI_STORE_* env vars)."""
    import uvicorn

    uvicorn.run("matrixci.store.main:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    cli()
