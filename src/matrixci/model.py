# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .guards import Guard


AttrValue = Any  # str | bool | int in practice


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


# ---------------------------------------------------------------------
# Matrix declaration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Variant:
    """One labeled option of an axis, e.g. a platform or a toolchain."""
    id: str
    attributes: Mapping[str, AttrValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _freeze(self.attributes))


@dataclass(frozen=True)
class Axis:
    """
    A named dimension of the matrix.

    `defaults` fills in attributes a variant leaves out, so
    `flag("platform.skip_tests")` is defined for every platform even when
    only one of them sets it.
    """
    name: str
    variants: Tuple[Variant, ...]
    defaults: Mapping[str, AttrValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variants", tuple(self.variants))
        object.__setattr__(self, "defaults", _freeze(self.defaults))

    def attribute(self, variant: Variant, key: str) -> AttrValue:
        if key in variant.attributes:
            return variant.attributes[key]
        if key in self.defaults:
            return self.defaults[key]
        raise KeyError(f"{self.name}.{key}")


@dataclass(frozen=True)
class JobDescriptor:
    """
    One fully resolved combination: a variant chosen from every axis.

    `choices` keeps axis declaration order, which is also the order the
    variant ids are joined in to form `id`.
    """
    index: int
    choices: Tuple[Tuple[Axis, Variant], ...]
    name_template: Optional[str] = None

    @property
    def id(self) -> str:
        return "-".join(v.id for _axis, v in self.choices)

    @property
    def display_name(self) -> str:
        if not self.name_template:
            return self.id
        # Local import: templates depends on model.
        from .templates import render, Scope

        return render(self.name_template, Scope(job=self), job=self.id, step="job name")

    def variant(self, axis_name: str) -> Variant:
        for axis, v in self.choices:
            if axis.name == axis_name:
                return v
        raise KeyError(axis_name)

    def resolve(self, ref: str) -> AttrValue:
        """
        Look up `<axis>`, `<axis>.id` or `<axis>.<attribute>`.

        A leading `matrix.` is accepted so references read like the hosted
        workflow syntax. Raises KeyError for anything unknown.
        """
        parts = ref.strip().split(".")
        if parts and parts[0] == "matrix":
            parts = parts[1:]
        if not parts or not parts[0]:
            raise KeyError(ref)

        for axis, v in self.choices:
            if axis.name != parts[0]:
                continue
            if len(parts) == 1 or (len(parts) == 2 and parts[1] == "id"):
                return v.id
            if len(parts) == 2:
                try:
                    return axis.attribute(v, parts[1])
                except KeyError:
                    raise KeyError(ref) from None
            raise KeyError(ref)
        raise KeyError(ref)

    def attributes(self) -> Dict[str, AttrValue]:
        """Flattened view used by reports and the JSON output."""
        out: Dict[str, AttrValue] = {}
        for axis, v in self.choices:
            out[axis.name] = v.id
            merged = dict(axis.defaults)
            merged.update(v.attributes)
            for k, val in merged.items():
                out[f"{axis.name}.{k}"] = val
        return out


# ---------------------------------------------------------------------
# Pipeline template
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single unit of work shared by every job of the matrix.

    `uses` names the capability that runs it ("run" for a shell command).
    `run`, `cwd` and the values of `args`/`env` may contain `${{ ref }}`
    placeholders that are filled from the job before the step runs.
    """
    name: str
    uses: str = "run"
    run: str | None = None
    args: Mapping[str, Any] = field(default_factory=dict)
    guard: Optional["Guard"] = None
    cwd: str | None = None
    timeout: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", _freeze(self.args))
        object.__setattr__(self, "env", _freeze(self.env))


class ArchiveFormat(str, enum.Enum):
    ZIP = "zip"
    TAR_GZ = "tar.gz"

    @property
    def extension(self) -> str:
        return "." + self.value


@dataclass(frozen=True)
class FormatRule:
    """
    Maps a job to its archive format.

    The variant chosen on `axis` is inspected: its `attribute` (or its id
    when `attribute` is None) selects ZIP when listed in `zip_values`,
    TAR_GZ otherwise, so every variant maps to exactly one format.
    """
    axis: str = "platform"
    attribute: str | None = "os"
    zip_values: frozenset = frozenset({"windows-latest"})

    def __post_init__(self) -> None:
        object.__setattr__(self, "zip_values", frozenset(self.zip_values))

    def resolve(self, job: JobDescriptor) -> ArchiveFormat:
        ref = self.axis if self.attribute is None else f"{self.axis}.{self.attribute}"
        value = job.resolve(ref)
        return ArchiveFormat.ZIP if str(value) in self.zip_values else ArchiveFormat.TAR_GZ

    def validate(self, axes: List[Axis]) -> None:
        by_name = {a.name: a for a in axes}
        axis = by_name.get(self.axis)
        if axis is None:
            raise ValueError(
                f"archive format rule names unknown axis {self.axis!r}. "
                f"Known axes: {sorted(by_name)}"
            )
        if self.attribute is None:
            return
        for v in axis.variants:
            try:
                axis.attribute(v, self.attribute)
            except KeyError:
                raise ValueError(
                    f"variant {v.id!r} of axis {axis.name!r} has no {self.attribute!r} "
                    f"attribute; archive format would be undefined"
                ) from None


@dataclass(frozen=True)
class Workflow:
    """Everything declared up front: matrix, pipeline and constants."""
    name: str
    axes: Tuple[Axis, ...]
    steps: Tuple[Step, ...]
    constants: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    exclude: Tuple[Mapping[str, str], ...] = ()
    job_name: str | None = None
    archive_format: FormatRule = field(default_factory=FormatRule)

    def __post_init__(self) -> None:
        object.__setattr__(self, "axes", tuple(self.axes))
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "exclude", tuple(_freeze(e) for e in self.exclude))
        object.__setattr__(self, "constants", _freeze(self.constants))
        object.__setattr__(self, "env", _freeze(self.env))


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class StepOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Reasons attached to skipped records
SKIP_GUARD = "guard"
SKIP_PREVIOUS_FAILURE = "previous-failure"


@dataclass(frozen=True)
class StepRecord:
    step: str
    outcome: StepOutcome
    reason: str | None = None
    output: str = ""
    exit_code: int | None = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"step": self.step, "outcome": self.outcome.value}
        if self.reason:
            d["reason"] = self.reason
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        if self.outcome is StepOutcome.FAILED:
            d["output"] = self.output
        d["duration"] = round(self.duration, 3)
        return d


@dataclass(frozen=True)
class Artifact:
    job_id: str
    name: str
    path: Path
    format: ArchiveFormat


@dataclass(frozen=True)
class PublishedArtifact:
    identity: str
    location: str


@dataclass
class RunResult:
    job: JobDescriptor
    records: List[StepRecord] = field(default_factory=list)
    status: JobStatus = JobStatus.SUCCEEDED
    artifact: Artifact | None = None
    published: PublishedArtifact | None = None

    @property
    def first_failure(self) -> StepRecord | None:
        for r in self.records:
            if r.outcome is StepOutcome.FAILED:
                return r
        return None

    def outcome_of(self, step_name: str) -> StepOutcome | None:
        for r in self.records:
            if r.step == step_name:
                return r.outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "job": self.job.id,
            "name": self.job.display_name,
            "status": self.status.value,
            "steps": [r.to_dict() for r in self.records],
        }
        if self.artifact is not None:
            d["artifact"] = {
                "name": self.artifact.name,
                "path": str(self.artifact.path),
                "format": self.artifact.format.value,
            }
        if self.published is not None:
            d["published"] = {
                "identity": self.published.identity,
                "location": self.published.location,
            }
        return d


@dataclass
class RunReport:
    run_id: str
    results: List[RunResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.status is JobStatus.SUCCEEDED for r in self.results)

    @property
    def failed_jobs(self) -> List[str]:
        return [r.job.id for r in self.results if r.status is not JobStatus.SUCCEEDED]

    @property
    def cancelled(self) -> bool:
        return any(r.status is JobStatus.CANCELLED for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "ok": self.ok,
            "failed_jobs": self.failed_jobs,
            "jobs": [r.to_dict() for r in self.results],
        }
