# templates.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import TemplateError
from .model import JobDescriptor

# ${{ platform.target }}, ${{ const.committer_email }}, ${{ run.id }}, ${{ job.workspace }}
_PLACEHOLDER = re.compile(r"\$\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}")


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class Scope:
    """Everything a template may reference for one job."""
    job: JobDescriptor
    constants: Mapping[str, Any] = field(default_factory=dict)
    run_id: str = ""
    workspace: str = ""

    def lookup(self, ref: str) -> Any:
        head, _, rest = ref.partition(".")
        if head == "const":
            return self.constants[rest]
        if head == "job" and rest == "id":
            return self.job.id
        if head == "job" and rest == "name":
            return self.job.display_name
        if head == "job" and rest == "workspace" and self.workspace:
            return self.workspace
        if head == "run" and rest == "id":
            return self.run_id
        return self.job.resolve(ref)


def render(text: str, scope: Scope, *, job: str = "", step: str = "") -> str:
    """Substitute every `${{ ref }}` in text. Unknown refs raise TemplateError."""

    def _sub(m: re.Match) -> str:
        ref = m.group(1)
        try:
            return _to_text(scope.lookup(ref))
        except KeyError:
            raise TemplateError(
                job=job or scope.job.id,
                step=step,
                message=f"unknown template reference {ref!r}",
            ) from None

    return _PLACEHOLDER.sub(_sub, text)


def render_value(value: Any, scope: Scope, *, job: str = "", step: str = "") -> Any:
    """Render strings (recursively inside lists/dicts); leave other values alone."""
    if isinstance(value, str):
        return render(value, scope, job=job, step=step)
    if isinstance(value, (list, tuple)):
        return [render_value(v, scope, job=job, step=step) for v in value]
    if isinstance(value, Mapping):
        return {k: render_value(v, scope, job=job, step=step) for k, v in value.items()}
    return value
