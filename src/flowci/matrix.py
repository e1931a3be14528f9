# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .expressions import to_string
from .model import JobInstance, JobTemplate, MatrixSpec


def matrix_points(spec: MatrixSpec) -> List[Dict[str, Any]]:
    """
    Cartesian product of the axes in declaration order (first axis varies
    slowest), minus every point matching an exclude entry.

    Example:
        axes {a: [1, 2], b: [x, y]} -> (1,x), (1,y), (2,x), (2,y)
    """
    names = list(spec.axes)
    if not names:
        return []

    points: List[Dict[str, Any]] = []
    for combo in itertools.product(*(spec.axes[n] for n in names)):
        point = dict(zip(names, combo))
        if any(_matches(point, ex) for ex in spec.exclude):
            continue
        points.append(point)
    return points


def _matches(point: Mapping[str, Any], exclude: Mapping[str, Any]) -> bool:
    # axes missing from the exclude entry are wildcards
    return all(axis in point and point[axis] == value for axis, value in exclude.items())


def instance_name(template: JobTemplate, point: Mapping[str, Any]) -> str:
    if not point:
        return template.name
    return f"{template.name} ({', '.join(to_string(v) for v in point.values())})"


def expand(
    template: JobTemplate,
    *,
    env: Optional[Mapping[str, str]] = None,
    start_index: int = 0,
) -> List[JobInstance]:
    """
    Expand a job template into its concrete instances.

    Jobs without a matrix expand to exactly one instance; a matrix whose
    exclusions remove every point expands to none. Re-expanding the same
    template yields the same ordered output.
    """
    merged_env = {**(env or {}), **template.env}

    if template.matrix is None:
        return [JobInstance(id=template.name, template=template, index=start_index, env=merged_env)]

    return [
        JobInstance(
            id=instance_name(template, point),
            template=template,
            index=start_index + i,
            matrix=point,
            env=dict(merged_env),
        )
        for i, point in enumerate(matrix_points(template.matrix))
    ]


def expand_all(templates: Iterable[JobTemplate], *, env: Optional[Mapping[str, str]] = None) -> List[JobInstance]:
    """Expand every template, numbering instances in declaration order."""
    out: List[JobInstance] = []
    for t in templates:
        out.extend(expand(t, env=env, start_index=len(out)))
    return out
