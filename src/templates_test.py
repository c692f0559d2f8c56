from __future__ import annotations

import pytest

from matrixci.dsl import axis, variant
from matrixci.errors import StepExecutionError, TemplateError
from matrixci.matrix import expand
from matrixci.templates import Scope, render, render_value


@pytest.fixture
def scope():
    job = expand(
        [axis("platform", variant("Linux-x86_64", target="x86_64-unknown-linux-musl", skip_tests=False)), axis("toolchain", "stable")],
        name_template="${{ platform }} / ${{ toolchain }}",
    )[0]
    return Scope(job=job, constants={"crate": "wormhole-rs"}, run_id="r42")


def test_render_job_attributes(scope):
    out = render("cross +${{ toolchain }} build --target ${{platform.target}}", scope)
    assert out == "cross +stable build --target x86_64-unknown-linux-musl"


def test_render_constants_and_run(scope):
    assert render("${{ const.crate }}-${{ platform.id }}", scope) == "wormhole-rs-Linux-x86_64"
    assert render("${{ run.id }}/${{ job.id }}", scope) == "r42/Linux-x86_64-stable"
    assert render("${{ job.name }}", scope) == "Linux-x86_64 / stable"


def test_render_booleans_lowercase(scope):
    assert render("skip=${{ platform.skip_tests }}", scope) == "skip=false"


def test_text_without_placeholders_unchanged(scope):
    assert render("echo ${HOME} {{ x }}", scope) == "echo ${HOME} {{ x }}"


def test_unknown_reference_raises(scope):
    with pytest.raises(TemplateError) as exc_info:
        render("${{ const.missing }}", scope, step="Build")
    err = exc_info.value
    assert isinstance(err, StepExecutionError)
    assert err.step == "Build"
    assert err.job == "Linux-x86_64-stable"
    assert "const.missing" in err.message


def test_render_value_recurses(scope):
    out = render_value({"paths": ["target/${{ platform.target }}"], "keep": 3, "key": "${{ toolchain }}"}, scope)
    assert out == {"paths": ["target/x86_64-unknown-linux-musl"], "keep": 3, "key": "stable"}


def test_workspace_reference(scope):
    with_ws = Scope(job=scope.job, workspace="/work/r42/Linux-x86_64-stable")
    assert render("${{ job.workspace }}/.gitconfig", with_ws) == "/work/r42/Linux-x86_64-stable/.gitconfig"
    with pytest.raises(TemplateError):
        render("${{ job.workspace }}", scope)
