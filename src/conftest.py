from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Set, Tuple

import pytest

from matrixci.capabilities import JobContext, StepCall, registry
from matrixci.config import Settings
from matrixci.dsl import axis, uses, variant, wf
from matrixci.errors import StepExecutionError
from matrixci.guards import contains, eq, flag, not_
from matrixci.publisher import LocalArtifactStore


class Recorder:
    """Fake capability: records every invocation, fails for chosen (job, step) pairs."""

    def __init__(self, fail: Set[Tuple[str, str]] | None = None):
        self.fail = fail or set()
        self.calls: List[Tuple[str, str]] = []

    def __call__(self, ctx: JobContext, call: StepCall) -> str:
        self.calls.append((ctx.job.id, call.name))
        if (ctx.job.id, call.name) in self.fail:
            raise StepExecutionError(
                job=ctx.job.id, step=call.name, message="forced failure", exit_code=2, output="boom\n"
            )
        return f"{call.name} ok\n"

    def steps_for(self, job_id: str) -> List[str]:
        return [s for j, s in self.calls if j == job_id]


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    src = tmp_path / "project"
    src.mkdir()
    (src / "README.md").write_text("hello\n", encoding="utf-8")
    return src


@pytest.fixture
def settings(tmp_path: Path, source_dir: Path) -> Settings:
    return Settings(
        run_id="run1",
        source=str(source_dir),
        workspace_root=tmp_path / "work",
        cache_root=tmp_path / "cache",
        store=LocalArtifactStore(tmp_path / "artifacts"),
    )


@pytest.fixture
def scenario_workflow():
    """Two platforms x two toolchains, every step backed by the fake capability."""
    return wf(
        "app",
        axes=[
            axis(
                "platform",
                variant("linux", target="x86_64-musl", os="ubuntu", skip_tests=False),
                variant("freebsd", target="x86_64-freebsd", os="ubuntu", skip_tests=True),
            ),
            axis("toolchain", "stable", "nightly"),
        ],
        steps=[
            uses("install deps", "fake", guard=contains("platform.target", "musl")),
            uses("build", "fake"),
            uses("test", "fake", guard=not_(flag("platform.skip_tests"))),
            uses("package", "fake", guard=eq("toolchain", "stable")),
            uses("publish", "fake", guard=eq("toolchain", "stable")),
        ],
    )


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fake_caps(recorder: Recorder) -> Dict:
    return registry({"fake": recorder})
