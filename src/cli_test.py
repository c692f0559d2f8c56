from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from matrixci.cli import cli

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")

REPO_ROOT = Path(__file__).resolve().parents[1]

DECLARATION = {
    "name": "demo",
    "axes": [
        {
            "name": "platform",
            "variants": [
                {"id": "linux", "attributes": {"os": "ubuntu"}},
                {"id": "bsd", "attributes": {"os": "ubuntu", "broken": True}},
            ],
            "defaults": {"broken": False},
        },
        {"name": "toolchain", "variants": [{"id": "stable"}]},
    ],
    "pipeline": [
        {"name": "Build", "run": "echo building ${{ platform }}"},
        {"name": "Break", "run": "echo kaputt; exit 4", "guard": {"flag": "platform.broken"}},
    ],
}

RUN_ARGS = ["--source", ".", "--work-dir", "work", "--cache-dir", "cache", "--artifact-dir", "dist", "--run-id", "r1"]


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("matrixci")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write(decl, name="matrixci.json"):
    Path(name).write_text(json.dumps(decl), encoding="utf-8")


def test_plan(project):
    _write(DECLARATION)
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "demo: 2 job(s)" in result.output
    assert "linux-stable" in result.output
    assert "skip  Break" in result.output
    assert "run   Break" in result.output


@posix_only
def test_run_reports_failing_job(project):
    _write(DECLARATION)
    result = CliRunner().invoke(cli, ["run", *RUN_ARGS, "--report-json", "report.json"])
    assert result.exit_code == 1, result.output
    assert "kaputt" in result.output
    assert "bsd-stable" in result.output

    report = json.loads(Path("report.json").read_text(encoding="utf-8"))
    assert report["run_id"] == "r1"
    assert report["ok"] is False
    assert report["failed_jobs"] == ["bsd-stable"]
    statuses = {j["job"]: j["status"] for j in report["jobs"]}
    assert statuses == {"linux-stable": "succeeded", "bsd-stable": "failed"}


@posix_only
def test_run_all_green(project):
    decl = dict(DECLARATION, pipeline=DECLARATION["pipeline"][:1])
    _write(decl)
    result = CliRunner().invoke(cli, ["run", *RUN_ARGS, "--workers", "1"])
    assert result.exit_code == 0, result.output
    assert "All jobs succeeded." in result.output
    assert (project / "work" / "r1" / "linux-stable").is_dir()


def test_invalid_declaration(project):
    _write({"name": "demo"})
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "Failed to load workflow" in result.output


def test_no_workflow_found(project):
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_choice(project):
    _write(DECLARATION)
    _write(DECLARATION, name="other_workflow.py")
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_plan_bundled_release_matrix(project):
    result = CliRunner().invoke(cli, ["plan", "--workflow", str(REPO_ROOT / "matrixci_workflow.py")])
    assert result.exit_code == 0, result.output
    assert "wormhole-rs: 12 job(s)" in result.output
    assert "Windows-x86_64-stable" in result.output


def test_workflow_function_error_is_reported(project):
    Path("broken_workflow.py").write_text("def workflow():\n    return 1 / 0\n", encoding="utf-8")
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "Failed to load workflow" in result.output
    assert "ZeroDivisionError" in result.output
