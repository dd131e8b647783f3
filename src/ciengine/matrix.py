# matrix.py
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ConfigError
from .expressions import render, render_mapping
from .model import ActionStep, CommandStep, JobInstance, JobTemplate, MatrixSpec, StepSpec

MATRIX_NS = ("matrix",)


# ---------------------------------------------------------------------
# Combinations
# ---------------------------------------------------------------------

def _as_spec(matrix: Union[MatrixSpec, Mapping[str, Any], None]) -> MatrixSpec:
    if matrix is None:
        return MatrixSpec()
    if isinstance(matrix, MatrixSpec):
        return matrix
    return MatrixSpec(dimensions={k: tuple(v) for k, v in matrix.items()})


def _matches(combo: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in partial.items())


def combinations(matrix: Union[MatrixSpec, Mapping[str, Any], None]) -> List[Dict[str, Any]]:
    """
    Cross product of the matrix dimensions.

    The first declared dimension varies slowest and every dimension keeps its
    declared value order, so the result is reproducible run to run.
    """
    spec = _as_spec(matrix)
    dims = list(spec.dimensions.items())

    for name, values in dims:
        if not values:
            raise ConfigError(f"matrix dimension {name!r} has no values")

    if dims:
        names = [n for n, _ in dims]
        combos = [dict(zip(names, values)) for values in itertools.product(*(v for _, v in dims))]
    elif spec.include:
        combos = []
    else:
        # no dimensions -> one job with an empty assignment
        return [{}]

    for ex in spec.exclude:
        combos = [c for c in combos if not _matches(c, ex)]

    original = set(spec.dimensions)
    for inc in spec.include:
        base = {k: v for k, v in inc.items() if k in original}
        extra = {k: v for k, v in inc.items() if k not in original}
        matched = False
        for combo in combos:
            if _matches(combo, base):
                combo.update(extra)
                matched = True
        if not matched:
            combos.append(dict(inc))

    return combos


# ---------------------------------------------------------------------
# Binding matrix values into a job template
# ---------------------------------------------------------------------

def bind_step(step: StepSpec, assignment: Mapping[str, Any]) -> StepSpec:
    """
    Apply `${{ matrix.* }}` substitutions to a step; other placeholders are left
    for run time. Conditions are not touched: they are evaluated per step with
    `matrix` in the context.
    """
    ctx = {"matrix": dict(assignment)}
    common = dict(
        name=render(step.name, ctx, namespaces=MATRIX_NS),
        inputs=render_mapping(step.inputs, ctx, namespaces=MATRIX_NS),
        env=render_mapping(step.env, ctx, namespaces=MATRIX_NS),
    )
    if isinstance(step, CommandStep):
        return replace(
            step,
            command=render(step.command, ctx, namespaces=MATRIX_NS),
            working_directory=render(step.working_directory, ctx, namespaces=MATRIX_NS),
            **common,
        )
    if isinstance(step, ActionStep):
        return replace(step, action_ref=render(step.action_ref, ctx, namespaces=MATRIX_NS), **common)
    raise TypeError(f"not a step: {step!r}")


def expand(
    matrix: Union[MatrixSpec, Mapping[str, Any], None],
    fail_fast: bool = True,
    *,
    template: Optional[JobTemplate] = None,
    workflow_env: Optional[Mapping[str, str]] = None,
) -> List[JobInstance]:
    """
    Expand a matrix into job instances, one per combination, in combination order.

    Args:
        matrix: MatrixSpec or a plain {dimension: [values]} mapping
        fail_fast: recorded on every instance; the coordinator cancels the
            live siblings of a failed instance when it is set
        template: job template whose steps/env/runs_on get the matrix bound;
            without one the instances carry no steps
        workflow_env: workflow-level environment layered under the job env
    """
    instances: List[JobInstance] = []
    for index, assignment in enumerate(combinations(matrix)):
        ctx = {"matrix": assignment}
        if template is not None:
            name = template.name
            steps = tuple(bind_step(s, assignment) for s in template.steps)
            runs_on = render(template.runs_on, ctx, namespaces=MATRIX_NS)
            env = render_mapping(template.env, ctx, namespaces=MATRIX_NS)
        else:
            name, steps, runs_on, env = "job", (), None, {}

        instances.append(
            JobInstance(
                template=name,
                index=index,
                matrix=dict(assignment),
                steps=steps,
                runs_on=runs_on,
                env=env,
                workflow_env=dict(workflow_env or {}),
                fail_fast=fail_fast,
            )
        )
    return instances


def expand_template(template: JobTemplate, workflow_env: Optional[Mapping[str, str]] = None) -> List[JobInstance]:
    return expand(template.matrix, template.fail_fast, template=template, workflow_env=workflow_env)
