# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MatrixError(Exception):
    """Base class for every error raised by matrixci."""


class DeclarationError(MatrixError):
    """The workflow declaration could not be loaded or is malformed."""


@dataclass(eq=False)
class GuardEvaluationError(MatrixError):
    """A guard referenced an attribute the job does not carry."""
    ref: str
    job: str

    def __str__(self) -> str:
        return f"guard references unknown attribute {self.ref!r} (job={self.job})"


@dataclass(eq=False)
class StepExecutionError(MatrixError):
    """
    An external process exited nonzero, crashed or timed out.

    `output` is the raw combined stdout/stderr, shown verbatim
    in the run report.
    """
    job: str
    step: str
    message: str
    exit_code: int | None = None
    output: str = ""

    def __str__(self) -> str:
        lines = [f"[{self.job}] step '{self.step}' failed: {self.message}"]
        if self.exit_code is not None:
            lines.append(f"exit={self.exit_code}")
        return "\n".join(lines)


@dataclass(eq=False)
class TemplateError(StepExecutionError):
    """A `${{ ref }}` placeholder could not be resolved."""


@dataclass(eq=False)
class PackagingError(MatrixError):
    job: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] packaging failed: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class PublishError(MatrixError):
    identity: str
    message: str

    def __str__(self) -> str:
        return f"publish of {self.identity!r} failed: {self.message}"
