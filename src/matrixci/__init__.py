from .dsl import axis, variant, sh, uses, checkout, cache, package, publish, wf
from .guards import eq, one_of, contains, flag, not_, all_of, any_of
from .matrix import expand
from .runner import run_job, plan_job
from .coordinator import run_matrix
from .config import Settings, load_workflow
from .model import Axis, Variant, Step, Workflow, JobDescriptor, FormatRule, RunResult, RunReport

__all__ = [
    "axis", "variant", "sh", "uses", "checkout", "cache", "package", "publish", "wf",
    "eq", "one_of", "contains", "flag", "not_", "all_of", "any_of",
    "expand", "run_job", "plan_job", "run_matrix", "Settings", "load_workflow",
    "Axis", "Variant", "Step", "Workflow", "JobDescriptor", "FormatRule", "RunResult", "RunReport",
]
