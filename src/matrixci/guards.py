# guards.py
"""
Guards: boolean predicates over a job's attributes.

A guard decides whether a step runs for a given job. Guards are plain,
immutable expression trees built with the helpers at the bottom of this
module (or parsed from the dict form used by JSON/TOML declarations):

    all_of(eq("toolchain", "stable"), not_(flag("platform.skip_tests")))

An attribute a guard references but the job does not carry makes the
guard fail closed: the step is skipped and a diagnostic is surfaced,
while every other job carries on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Tuple

from .errors import GuardEvaluationError
from .model import JobDescriptor

logger = logging.getLogger(__name__)

_FALSY = {"", "0", "false", "no", "off", "none", "null"}


def _norm(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return _norm(value).strip().lower() not in _FALSY


def _lookup(job: JobDescriptor, ref: str) -> Any:
    try:
        return job.resolve(ref)
    except KeyError:
        raise GuardEvaluationError(ref=ref, job=job.id) from None


class Guard:
    def evaluate(self, job: JobDescriptor) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Equals(Guard):
    ref: str
    value: Any

    def evaluate(self, job: JobDescriptor) -> bool:
        return _norm(_lookup(job, self.ref)) == _norm(self.value)


@dataclass(frozen=True)
class OneOf(Guard):
    ref: str
    values: Tuple[Any, ...]

    def evaluate(self, job: JobDescriptor) -> bool:
        actual = _norm(_lookup(job, self.ref))
        return any(actual == _norm(v) for v in self.values)


@dataclass(frozen=True)
class Contains(Guard):
    ref: str
    substring: str

    def evaluate(self, job: JobDescriptor) -> bool:
        return self.substring in _norm(_lookup(job, self.ref))


@dataclass(frozen=True)
class Flag(Guard):
    ref: str

    def evaluate(self, job: JobDescriptor) -> bool:
        return _truthy(_lookup(job, self.ref))


@dataclass(frozen=True)
class Not(Guard):
    inner: Guard

    def evaluate(self, job: JobDescriptor) -> bool:
        return not self.inner.evaluate(job)


@dataclass(frozen=True)
class All(Guard):
    parts: Tuple[Guard, ...]

    def evaluate(self, job: JobDescriptor) -> bool:
        # Evaluate every part so an unknown ref is reported even after a
        # false operand.
        results = [g.evaluate(job) for g in self.parts]
        return all(results)


@dataclass(frozen=True)
class Any_(Guard):
    parts: Tuple[Guard, ...]

    def evaluate(self, job: JobDescriptor) -> bool:
        results = [g.evaluate(job) for g in self.parts]
        return any(results)


# ---------------------------------------------------------------------
# Evaluation entry point
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class GuardVerdict:
    passed: bool
    diagnostic: str | None = None


def check(guard: Guard | None, job: JobDescriptor) -> GuardVerdict:
    """Evaluate a step guard for one job; unknown attributes fail closed."""
    if guard is None:
        return GuardVerdict(True)
    try:
        return GuardVerdict(bool(guard.evaluate(job)))
    except GuardEvaluationError as e:
        logger.warning("guard treated as false: %s", e)
        return GuardVerdict(False, str(e))


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def eq(ref: str, value: Any) -> Guard:
    return Equals(ref, value)


def one_of(ref: str, values: Iterable[Any]) -> Guard:
    return OneOf(ref, tuple(values))


def contains(ref: str, substring: str) -> Guard:
    return Contains(ref, substring)


def flag(ref: str) -> Guard:
    return Flag(ref)


def not_(guard: Guard) -> Guard:
    return Not(guard)


def all_of(*guards: Guard) -> Guard:
    return All(tuple(guards))


def any_of(*guards: Guard) -> Guard:
    return Any_(tuple(guards))


# ---------------------------------------------------------------------
# Declarative (dict) form
# ---------------------------------------------------------------------

def _pair(op: str, arg: Any) -> Tuple[str, Any]:
    if not isinstance(arg, (list, tuple)) or len(arg) != 2 or not isinstance(arg[0], str):
        raise ValueError(f"guard {op!r} expects [ref, value], got {arg!r}")
    return arg[0], arg[1]


def guard_from_dict(data: Any) -> Guard:
    """
    Parse the declarative guard form:

      {"eq": ["toolchain", "stable"]}
      {"in": ["toolchain", ["stable", "beta"]]}
      {"contains": ["platform.name", "musl"]}
      {"flag": "platform.skip_tests"}
      {"not": <guard>}
      {"all": [<guard>, ...]}   {"any": [<guard>, ...]}
    """
    if not isinstance(data, Mapping) or len(data) != 1:
        raise ValueError(f"guard must be a single-key mapping, got {data!r}")

    (op, arg), = data.items()

    if op == "eq":
        ref, value = _pair(op, arg)
        return eq(ref, value)
    if op == "in":
        ref, values = _pair(op, arg)
        if not isinstance(values, (list, tuple)):
            raise ValueError(f"guard 'in' expects a list of values, got {values!r}")
        return one_of(ref, values)
    if op == "contains":
        ref, sub = _pair(op, arg)
        return contains(ref, str(sub))
    if op == "flag":
        if not isinstance(arg, str):
            raise ValueError(f"guard 'flag' expects an attribute reference, got {arg!r}")
        return flag(arg)
    if op == "not":
        return not_(guard_from_dict(arg))
    if op in ("all", "any"):
        if not isinstance(arg, (list, tuple)) or not arg:
            raise ValueError(f"guard {op!r} expects a non-empty list, got {arg!r}")
        parts = [guard_from_dict(g) for g in arg]
        return all_of(*parts) if op == "all" else any_of(*parts)

    raise ValueError(f"unknown guard operator {op!r}")
