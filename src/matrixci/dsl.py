# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from .guards import Guard
from .model import Axis, FormatRule, Step, Variant, Workflow


# ---------------------------------------------------------------------
# Matrix helpers
# ---------------------------------------------------------------------

def variant(id: str, **attributes: Any) -> Variant:
    """variant("Linux-x86_64", target="x86_64-unknown-linux-musl", bin="app")"""
    return Variant(id=id, attributes=attributes)


def axis(name: str, *variants: Variant | str, defaults: Optional[Mapping[str, Any]] = None) -> Axis:
    """
    Declare an axis. Plain strings are shorthand for attribute-less variants:

        axis("toolchain", "stable", "beta", "nightly")
    """
    vs = [v if isinstance(v, Variant) else Variant(id=str(v)) for v in variants]
    return Axis(name=name, variants=tuple(vs), defaults=defaults or {})


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    guard: Guard | None = None,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, uses="run", run=cmd, cwd=cwd, guard=guard, timeout=timeout, env=env or {})


def uses(name: str, capability: str, *, guard: Guard | None = None, timeout: float | None = None, **args: Any) -> Step:
    """Create a step backed by a named capability."""
    return Step(name=name, uses=capability, args=args, guard=guard, timeout=timeout)


def checkout(name: str = "Checkout", *, repository: str | None = None, ref: str | None = None) -> Step:
    args: Dict[str, Any] = {}
    if repository:
        args["repository"] = repository
    if ref:
        args["ref"] = ref
    return Step(name=name, uses="checkout", args=args)


def cache(
    name: str,
    *,
    paths: List[str],
    key: str = "${{ job.id }}",
    inputs: Optional[List[str]] = None,
    keep: int = 3,
    guard: Guard | None = None,
) -> Step:
    return Step(
        name=name,
        uses="cache",
        args={"key": key, "paths": list(paths), "inputs": list(inputs or []), "keep": keep},
        guard=guard,
    )


def package(
    name: str,
    *,
    binary: str,
    archive: str,
    source_dir: str = ".",
    guard: Guard | None = None,
) -> Step:
    return Step(
        name=name,
        uses="package",
        args={"binary": binary, "archive": archive, "source_dir": source_dir},
        guard=guard,
    )


def publish(name: str, *, identity: str, guard: Guard | None = None) -> Step:
    return Step(name=name, uses="publish", args={"name": identity}, guard=guard)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *,
    axes: Iterable[Axis],
    steps: Iterable[Step],
    constants: Optional[Mapping[str, str]] = None,
    env: Optional[Mapping[str, str]] = None,
    exclude: Iterable[Mapping[str, str]] = (),
    job_name: str | None = None,
    archive_format: FormatRule | None = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write, in matrixci_workflow.py:

        from matrixci.dsl import wf, axis, variant, sh

        def workflow():
            return wf(
                "my-project",
                axes=[axis("toolchain", "stable", "nightly")],
                steps=[sh("Build", "cargo +${{ toolchain }} build")],
            )
    """
    steps = list(steps)
    if not steps:
        raise ValueError(f"workflow {name!r} must have at least one step")

    return Workflow(
        name=name,
        axes=tuple(axes),
        steps=tuple(steps),
        constants=constants or {},
        env=env or {},
        exclude=tuple(exclude),
        job_name=job_name,
        archive_format=archive_format or FormatRule(),
    )
