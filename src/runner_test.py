from __future__ import annotations

import dataclasses
import os
import shutil
import tarfile
import zipfile
from pathlib import Path

import pytest

from conftest import Recorder
from matrixci.capabilities import registry
from matrixci.config import load_workflow
from matrixci.dsl import axis, checkout, package, publish, sh, uses, variant, wf
from matrixci.guards import eq, flag
from matrixci.matrix import expand
from matrixci.model import SKIP_GUARD, SKIP_PREVIOUS_FAILURE, JobStatus, StepOutcome
from matrixci.runner import plan_job, run_job

REPO_ROOT = Path(__file__).resolve().parents[1]

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")

S, K, F = StepOutcome.SUCCEEDED, StepOutcome.SKIPPED, StepOutcome.FAILED


def _outcomes(result):
    return {r.step: r.outcome for r in result.records}


def _run_all(workflow, settings, caps):
    jobs = expand(workflow.axes, workflow.exclude, workflow.job_name)
    return {j.id: run_job(j, workflow, settings, caps) for j in jobs}


def test_guards_select_steps_per_job(scenario_workflow, settings, fake_caps, recorder):
    results = _run_all(scenario_workflow, settings, fake_caps)

    assert _outcomes(results["linux-stable"]) == {
        "install deps": S, "build": S, "test": S, "package": S, "publish": S,
    }
    assert _outcomes(results["linux-nightly"]) == {
        "install deps": S, "build": S, "test": S, "package": K, "publish": K,
    }
    assert _outcomes(results["freebsd-stable"]) == {
        "install deps": K, "build": S, "test": K, "package": S, "publish": S,
    }
    assert _outcomes(results["freebsd-nightly"]) == {
        "install deps": K, "build": S, "test": K, "package": K, "publish": K,
    }
    assert all(r.status is JobStatus.SUCCEEDED for r in results.values())
    assert recorder.steps_for("freebsd-nightly") == ["build"]


def test_skipped_by_guard_carries_reason(scenario_workflow, settings, fake_caps):
    job = expand(scenario_workflow.axes)[-1]  # freebsd-nightly
    result = run_job(job, scenario_workflow, settings, fake_caps)
    skipped = [r for r in result.records if r.outcome is K]
    assert skipped and all(r.reason == SKIP_GUARD for r in skipped)


def test_failure_skips_remaining_steps(scenario_workflow, settings):
    rec = Recorder(fail={("linux-stable", "build")})
    job = expand(scenario_workflow.axes)[0]
    result = run_job(job, scenario_workflow, settings, registry({"fake": rec}))

    assert result.status is JobStatus.FAILED
    assert _outcomes(result) == {"install deps": S, "build": F, "test": K, "package": K, "publish": K}
    assert [r.reason for r in result.records[2:]] == [SKIP_PREVIOUS_FAILURE] * 3
    failure = result.first_failure
    assert failure.step == "build"
    assert failure.exit_code == 2
    assert "boom" in failure.output
    assert rec.steps_for("linux-stable") == ["install deps", "build"]


def test_records_follow_declaration_order(scenario_workflow, settings, fake_caps):
    job = expand(scenario_workflow.axes)[1]
    result = run_job(job, scenario_workflow, settings, fake_caps)
    assert [r.step for r in result.records] == [s.name for s in scenario_workflow.steps]


def test_unknown_guard_reference_skips_only_that_step(settings, fake_caps):
    workflow = wf(
        "w",
        axes=[axis("platform", variant("linux", os="ubuntu"))],
        steps=[uses("odd", "fake", guard=flag("platform.nope")), uses("build", "fake")],
    )
    result = run_job(expand(workflow.axes)[0], workflow, settings, fake_caps)
    odd, build = result.records
    assert odd.outcome is K
    assert odd.reason.startswith(SKIP_GUARD + ": ")
    assert "platform.nope" in odd.reason
    assert build.outcome is S
    assert result.status is JobStatus.SUCCEEDED


def test_plan_matches_execution(scenario_workflow, settings, fake_caps):
    for job in expand(scenario_workflow.axes):
        planned = {step.name: verdict.passed for step, verdict in plan_job(job, scenario_workflow)}
        result = run_job(job, scenario_workflow, settings, fake_caps)
        ran = {r.step: r.outcome is S for r in result.records}
        assert planned == ran


def test_unknown_capability_fails_step(settings):
    workflow = wf("w", axes=[axis("toolchain", "stable")], steps=[uses("mystery", "teleport")])
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    assert result.status is JobStatus.FAILED
    assert "unknown capability 'teleport'" in result.first_failure.output


def test_unwritable_workspace_fails_job(tmp_path, settings, scenario_workflow, fake_caps):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    settings.workspace_root = blocker
    result = run_job(expand(scenario_workflow.axes)[0], scenario_workflow, settings, fake_caps)
    assert result.status is JobStatus.FAILED
    assert result.records[0].step == "workspace"
    assert all(r.outcome is K for r in result.records[1:])


@posix_only
def test_shell_step_output_and_env(settings):
    workflow = wf(
        "w",
        env={"GREETING": "hello"},
        axes=[axis("toolchain", "stable")],
        steps=[sh("say", 'echo "$GREETING ${{ toolchain }} $EXTRA"', env={"EXTRA": "${{ toolchain }}-x"})],
    )
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    assert result.status is JobStatus.SUCCEEDED
    assert result.records[0].output.strip() == "hello stable stable-x"


@posix_only
def test_shell_failure_keeps_output_and_exit_code(settings):
    workflow = wf(
        "w",
        axes=[axis("toolchain", "stable")],
        steps=[sh("broken", "echo compiling; echo 'error[E0308]: mismatched types' >&2; exit 3"), sh("after", "true")],
    )
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    failure = result.first_failure
    assert failure.step == "broken"
    assert failure.exit_code == 3
    assert "compiling" in failure.output
    assert "error[E0308]: mismatched types" in failure.output
    assert result.outcome_of("after") is K


@posix_only
def test_shell_timeout_fails_step(settings):
    workflow = wf("w", axes=[axis("toolchain", "stable")], steps=[sh("slow", "sleep 5", timeout=0.3)])
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    assert result.status is JobStatus.FAILED
    assert "timed out" in result.first_failure.output


@posix_only
def test_template_error_fails_step(settings):
    workflow = wf("w", axes=[axis("toolchain", "stable")], steps=[sh("bad", "echo ${{ const.nope }}")])
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    assert result.status is JobStatus.FAILED
    assert "const.nope" in result.first_failure.output


@posix_only
def test_missing_cwd_fails_step(settings):
    workflow = wf("w", axes=[axis("toolchain", "stable")], steps=[sh("bad", "true", cwd="does/not/exist")])
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    assert "cwd not found" in result.first_failure.output


@posix_only
def test_build_package_publish_end_to_end(tmp_path, settings):
    workflow = wf(
        "app",
        constants={"crate": "app"},
        axes=[
            axis(
                "platform",
                variant("linux", os="ubuntu-20.04", bin="app", name="app-linux.tar.gz"),
                variant("windows", os="windows-latest", bin="app.exe", name="app-windows.zip"),
            ),
            axis("toolchain", "stable", "nightly"),
        ],
        steps=[
            checkout(),
            sh("Build", "mkdir -p out && printf 'binary' > out/${{ platform.bin }}"),
            package("Package", binary="${{ platform.bin }}", archive="${{ platform.name }}", source_dir="out", guard=eq("toolchain", "stable")),
            publish("Publish", identity="${{ const.crate }}-${{ platform }}", guard=eq("toolchain", "stable")),
        ],
    )
    results = _run_all(workflow, settings, None)
    assert all(r.status is JobStatus.SUCCEEDED for r in results.values())

    # checkout copied the project into every workspace
    assert (settings.workspace_for("linux-nightly") / "README.md").is_file()

    linux = results["linux-stable"]
    assert linux.artifact.name == "app-linux.tar.gz"
    with tarfile.open(linux.published.location) as tar:
        assert tar.getnames() == ["app"]

    windows = results["windows-stable"]
    assert windows.artifact.name == "app-windows.zip"
    with zipfile.ZipFile(windows.published.location) as zf:
        assert zf.namelist() == ["app.exe"]
        assert zf.read("app.exe") == b"binary"

    assert results["linux-nightly"].artifact is None
    assert results["linux-nightly"].published is None
    published = sorted(p.name for p in (tmp_path / "artifacts" / "run1").iterdir())
    assert published == ["app-linux", "app-windows"]


@posix_only
def test_long_failure_output_kept_whole(settings):
    workflow = wf(
        "w",
        axes=[axis("toolchain", "stable")],
        steps=[sh("noisy", "echo 'error: first diagnostic'; head -c 20000 /dev/zero | tr '\\0' x; echo; exit 3")],
    )
    result = run_job(expand(workflow.axes)[0], workflow, settings)
    failure = result.first_failure
    assert failure.exit_code == 3
    assert failure.output.startswith("error: first diagnostic")
    assert failure.output.count("x") >= 20000
    assert "error: first diagnostic" in result.to_dict()["steps"][0]["output"]


@posix_only
@pytest.mark.skipif(shutil.which("git") is None, reason="needs git")
def test_release_workflow_configures_git_in_plain_directory(settings, monkeypatch):
    home_config = settings.workspace_root.parent / "home.gitconfig"
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home_config))

    release = load_workflow(REPO_ROOT / "matrixci_workflow.py")
    workflow = dataclasses.replace(
        release, steps=[s for s in release.steps if s.name in ("Checkout", "Configure Git")]
    )
    job = next(j for j in expand(workflow.axes) if j.id == "FreeBSD-x86_64-stable")
    result = run_job(job, workflow, settings)

    assert result.status is JobStatus.SUCCEEDED, result.first_failure
    gitconfig = (settings.workspace_for(job.id) / ".gitconfig").read_text(encoding="utf-8")
    assert "jdoe@example.com" in gitconfig
    assert not home_config.exists()
