# src/ciengine/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import ConfigError
from .expressions import stringify
from .model import (
    ActionStep,
    CommandStep,
    Condition,
    ConcurrencyPolicy,
    JobTemplate,
    MatrixSpec,
    StepSpec,
    TriggerRule,
    WorkflowDefinition,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    inputs: Optional[Dict[str, Any]] = None,
    when: Optional[Condition] = None,
    continue_on_error: bool = False,
) -> CommandStep:
    """Create a shell step."""
    return CommandStep(
        name=name,
        command=cmd,
        id=id,
        inputs={k: stringify(v) for k, v in (inputs or {}).items()},
        env={k: stringify(v) for k, v in (env or {}).items()},
        condition=when,
        continue_on_error=continue_on_error,
        working_directory=cwd,
    )


def uses(
    name: str,
    ref: str,
    *,
    id: str | None = None,
    with_: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, Any]] = None,
    when: Optional[Condition] = None,
    continue_on_error: bool = False,
) -> ActionStep:
    """Create a step that runs an action: uses("checkout", "actions/checkout@v4")."""
    return ActionStep(
        name=name,
        action_ref=ref,
        id=id,
        inputs={k: stringify(v) for k, v in (with_ or {}).items()},
        env={k: stringify(v) for k, v in (env or {}).items()},
        condition=when,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Sequence[Mapping[str, Any]] = (),
    exclude: Sequence[Mapping[str, Any]] = (),
    **dimensions: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["ubuntu-22.04", "macos-14"], target=["x86_64"])
    """
    return MatrixSpec(
        dimensions={k: tuple(v) for k, v in dimensions.items()},
        include=tuple(dict(e) for e in include),
        exclude=tuple(dict(e) for e in exclude),
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    runs_on: str | None = None,
    matrix: Optional[MatrixSpec] = None,
    fail_fast: bool = True,
    max_parallel: int | None = None,
    cwd: str | None = None,  # default cwd applied to command steps missing one
) -> JobTemplate:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, working_directory=cwd)
            if isinstance(s, CommandStep) and s.working_directory is None
            else s
            for s in steps_final
        ]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        runs_on=runs_on,
        env={k: stringify(v) for k, v in (env or {}).items()},
        matrix=matrix or MatrixSpec(),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        needs=tuple(needs or ()),
    )


# ---------------------------------------------------------------------
# Triggers / concurrency
# ---------------------------------------------------------------------

def on(kind: str, *subtypes: str) -> TriggerRule:
    """on("pull_request", "opened", "synchronize")"""
    return TriggerRule(kind=kind, subtypes=frozenset(subtypes))


def concurrency(group: str, *, cancel_in_progress: bool = False, queue: str = "fifo") -> ConcurrencyPolicy:
    return ConcurrencyPolicy(group=group, cancel_in_progress=cancel_in_progress, queue_policy=queue)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: JobTemplate,
    triggers: Sequence[TriggerRule] = (),
    concurrency: Optional[ConcurrencyPolicy] = None,
    env: Optional[Dict[str, Any]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(...).

    Users can write:
        from ciengine import wf, job, sh, on

        def workflow():
            return wf(
                "test",
                job("build", sh("build", "make")),
                job("test", sh("test", "make test"), needs=["build"]),
                triggers=[on("push")],
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf("test", job(...), triggers=[on("push")])
    """
    by_name: Dict[str, JobTemplate] = {}
    for j in jobs:
        if j.name in by_name:
            raise ConfigError(f"duplicate job name: {j.name}", where=name)
        by_name[j.name] = j

    return WorkflowDefinition(
        name=name,
        triggers=tuple(triggers),
        jobs=by_name,
        concurrency=concurrency,
        env={k: stringify(v) for k, v in (env or {}).items()},
    )
