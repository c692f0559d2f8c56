# config.py
from __future__ import annotations

import json
import runpy
import tomllib
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .cache import DEFAULT_CACHE_DIR
from .errors import DeclarationError
from .guards import guard_from_dict
from .model import Axis, FormatRule, Step, Variant, Workflow
from .publisher import ArtifactStore, LocalArtifactStore

DEFAULT_WORKSPACE_DIR = ".matrixci/work"
DEFAULT_ARTIFACT_DIR = ".matrixci/artifacts"


# ----------------------------------------------------------------------
# Run settings
# ----------------------------------------------------------------------

def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Settings:
    """
    Run-wide configuration handed explicitly to every job.

    Nothing a job does depends on the process's working directory or the
    ambient environment beyond what is recorded here.
    """
    run_id: str = field(default_factory=new_run_id)
    source: str = "."
    workspace_root: Path = Path(DEFAULT_WORKSPACE_DIR)
    cache_root: Path = Path(DEFAULT_CACHE_DIR)
    store: ArtifactStore = field(default_factory=lambda: LocalArtifactStore(DEFAULT_ARTIFACT_DIR))
    default_timeout: Optional[float] = None
    cache_keep: int = 3

    def __post_init__(self) -> None:
        self.workspace_root = Path(self.workspace_root).resolve()
        self.cache_root = Path(self.cache_root).resolve()

    def workspace_for(self, job_id: str) -> Path:
        return self.workspace_root / self.run_id / job_id


# ----------------------------------------------------------------------
# Declarative schema (JSON / TOML)
# ----------------------------------------------------------------------

Scalar = Union[bool, int, float, str]


class VariantSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    attributes: Dict[str, Scalar] = Field(default_factory=dict)


class AxisSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    variants: List[VariantSchema]
    defaults: Dict[str, Scalar] = Field(default_factory=dict)


class StepSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    uses: str = "run"
    run: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    guard: Optional[Dict[str, Any]] = None
    cwd: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    env: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _run_needs_command(self) -> "StepSchema":
        if self.uses == "run" and not self.run:
            raise ValueError(f"step {self.name!r} uses 'run' but has no command")
        return self


class FormatSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    axis: str = "platform"
    attribute: Optional[str] = "os"
    zip: List[str] = Field(default_factory=lambda: ["windows-latest"])


class WorkflowSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    axes: List[AxisSchema]
    pipeline: List[StepSchema]
    constants: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    exclude: List[Dict[str, str]] = Field(default_factory=list)
    job_name: Optional[str] = None
    archive_format: FormatSchema = Field(default_factory=FormatSchema)

    def to_workflow(self) -> Workflow:
        axes = [
            Axis(
                name=a.name,
                variants=tuple(Variant(id=v.id, attributes=v.attributes) for v in a.variants),
                defaults=a.defaults,
            )
            for a in self.axes
        ]
        steps = []
        for s in self.pipeline:
            try:
                guard = guard_from_dict(s.guard) if s.guard is not None else None
            except ValueError as e:
                raise DeclarationError(f"step {s.name!r}: {e}") from e
            steps.append(
                Step(
                    name=s.name,
                    uses=s.uses,
                    run=s.run,
                    args=s.with_,
                    guard=guard,
                    cwd=s.cwd,
                    timeout=s.timeout,
                    env=s.env,
                )
            )
        return Workflow(
            name=self.name,
            axes=tuple(axes),
            steps=tuple(steps),
            constants=self.constants,
            env=self.env,
            exclude=tuple(self.exclude),
            job_name=self.job_name,
            archive_format=FormatRule(
                axis=self.archive_format.axis,
                attribute=self.archive_format.attribute,
                zip_values=frozenset(self.archive_format.zip),
            ),
        )


def parse_workflow(data: Dict[str, Any]) -> Workflow:
    """Validate a declaration mapping and build the Workflow it describes."""
    try:
        schema = WorkflowSchema.model_validate(data)
    except ValidationError as e:
        raise DeclarationError(f"invalid workflow declaration:\n{e}") from e
    wf = schema.to_workflow()
    validate_workflow(wf)
    return wf


def validate_workflow(wf: Workflow) -> None:
    names = [s.name for s in wf.steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DeclarationError(f"Duplicate step names found: {dupes}")

    axis_names = [a.name for a in wf.axes]
    if len(set(axis_names)) != len(axis_names):
        raise DeclarationError(f"Duplicate axis names found: {axis_names}")

    for a in wf.axes:
        ids = [v.id for v in a.variants]
        if len(set(ids)) != len(ids):
            raise DeclarationError(f"Duplicate variant ids on axis {a.name!r}: {ids}")

    try:
        wf.archive_format.validate(list(wf.axes))
    except ValueError as e:
        raise DeclarationError(str(e)) from e


# ----------------------------------------------------------------------
# Workflow loading
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> Workflow:
    module_name = f"matrixci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except Exception as e:
        raise DeclarationError(f"error while executing {wf_path.name}: {e}") from e

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            wf = globals_dict["workflow"]()
        except Exception as e:
            raise DeclarationError(f"workflow() in {wf_path.name} raised {type(e).__name__}: {e}") from e
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, Workflow):
        raise DeclarationError(
            "Workflow file must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = Workflow(...)."
        )
    validate_workflow(wf)
    return wf


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow declaration, read once at the start of a run.

    Supported:
      - .py    defines workflow() -> Workflow, or WORKFLOW = Workflow(...)
      - .json  declarative form (see WorkflowSchema)
      - .toml  same shape as JSON
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DeclarationError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _load_python(wf_path)

    try:
        if wf_path.suffix == ".json":
            data = json.loads(wf_path.read_text(encoding="utf-8"))
        elif wf_path.suffix == ".toml":
            data = tomllib.loads(wf_path.read_text(encoding="utf-8"))
        else:
            raise DeclarationError(f"Unsupported workflow file type: {wf_path.name}")
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise DeclarationError(f"could not parse {wf_path.name}: {e}") from e

    if not isinstance(data, dict):
        raise DeclarationError(f"{wf_path.name} must contain a mapping at the top level")
    return parse_workflow(data)
