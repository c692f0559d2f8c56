# matrix.py
from __future__ import annotations

import itertools
import logging
from typing import Iterable, List, Mapping, Optional, Sequence

from .errors import TemplateError
from .model import Axis, JobDescriptor, Variant

logger = logging.getLogger(__name__)


def _excluded(choices: Sequence[tuple[Axis, Variant]], rules: Sequence[Mapping[str, str]]) -> bool:
    picked = {axis.name: v.id for axis, v in choices}
    for rule in rules:
        if rule and all(picked.get(axis) == vid for axis, vid in rule.items()):
            return True
    return False


def expand(
    axes: Iterable[Axis],
    exclude: Iterable[Mapping[str, str]] = (),
    name_template: Optional[str] = None,
) -> List[JobDescriptor]:
    """
    Expand axes into the Cartesian product of their variants.

    Ordering follows declaration: the first axis varies slowest. A combination
    is dropped only when it matches every entry of an exclusion rule. An axis
    with no variants makes the product empty; that is logged, not raised.
    """
    axes = list(axes)
    rules = [dict(r) for r in exclude]

    if not axes:
        logger.warning("matrix has no axes; nothing to run")
        return []

    empty = [a.name for a in axes if not a.variants]
    if empty:
        logger.warning("axis %s has no variants; matrix expands to zero jobs", ", ".join(empty))
        return []

    known = {a.name: {v.id for v in a.variants} for a in axes}
    for rule in rules:
        for axis_name, vid in rule.items():
            if axis_name not in known or vid not in known[axis_name]:
                logger.warning("exclusion rule %s matches no variant (%s=%s)", rule, axis_name, vid)

    jobs: List[JobDescriptor] = []
    per_axis = [[(a, v) for v in a.variants] for a in axes]
    for combo in itertools.product(*per_axis):
        if _excluded(combo, rules):
            continue
        jobs.append(JobDescriptor(index=len(jobs), choices=tuple(combo), name_template=name_template))

    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ValueError(f"Duplicate job ids found: {dupes}")

    if name_template:
        for j in jobs:
            try:
                _ = j.display_name
            except TemplateError as e:
                raise ValueError(f"job name template {name_template!r}: {e.message}") from e

    logger.debug("expanded %d axes into %d jobs", len(axes), len(jobs))
    return jobs
