# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from .dag import job_levels
from .errors import ConfigError
from .expressions import stringify
from .model import (
    ActionStep,
    CommandStep,
    ConcurrencyPolicy,
    JobTemplate,
    MatrixSpec,
    StepSpec,
    TriggerRule,
    WorkflowDefinition,
)
from .schema import JobSchema, StepSchema, WorkflowSchema


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _str_map(values: Mapping[str, Any]) -> Dict[str, str]:
    return {str(k): stringify(v) for k, v in values.items()}


def format_validation_error(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc or '<root>'}: {err.get('msg')}")
    return "; ".join(lines)


def read_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping, wrapping syntax errors into ConfigError."""
    if not path.exists():
        raise ConfigError(f"file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML syntax: {e}", where=str(path))
    if not data:
        raise ConfigError("document is empty", where=str(path))
    if not isinstance(data, dict):
        raise ConfigError("document must be a mapping", where=str(path))
    return data


# ----------------------------------------------------------------------
# Schema -> model
# ----------------------------------------------------------------------

def step_from_schema(s: StepSchema) -> StepSpec:
    condition: Any = s.if_
    if isinstance(condition, bool):
        condition = "true" if condition else "false"

    if s.uses:
        return ActionStep(
            name=s.name or f"Run {s.uses}",
            action_ref=s.uses,
            id=s.id,
            inputs=_str_map(s.with_),
            env=_str_map(s.env),
            condition=condition,
            continue_on_error=s.continue_on_error,
        )
    first_line = (s.run or "").strip().splitlines()[0] if (s.run or "").strip() else ""
    return CommandStep(
        name=s.name or f"Run {first_line}",
        command=s.run or "",
        id=s.id,
        inputs=_str_map(s.with_),
        env=_str_map(s.env),
        condition=condition,
        continue_on_error=s.continue_on_error,
        working_directory=s.working_directory,
    )


def steps_from_schema(steps: List[StepSchema], *, where: str) -> Tuple[StepSpec, ...]:
    out: List[StepSpec] = []
    seen_ids: set = set()
    for s in steps:
        if s.id:
            if s.id in seen_ids:
                raise ConfigError(f"duplicate step id {s.id!r}", where=where)
            seen_ids.add(s.id)
        out.append(step_from_schema(s))
    return tuple(out)


def _matrix_from_schema(raw: Mapping[str, Any]) -> MatrixSpec:
    dims = {k: tuple(v) for k, v in raw.items() if k not in ("include", "exclude")}
    return MatrixSpec(
        dimensions=dims,
        include=tuple(dict(e) for e in raw.get("include", []) or []),
        exclude=tuple(dict(e) for e in raw.get("exclude", []) or []),
    )


def _job_from_schema(job_id: str, job: JobSchema) -> JobTemplate:
    strategy = job.strategy
    return JobTemplate(
        name=job.name or job_id,
        steps=steps_from_schema(job.steps, where=f"jobs.{job_id}"),
        runs_on=job.runs_on,
        env=_str_map(job.env),
        matrix=_matrix_from_schema(strategy.matrix) if strategy else MatrixSpec(),
        fail_fast=strategy.fail_fast if strategy else True,
        max_parallel=strategy.max_parallel if strategy else None,
        needs=tuple(job.needs),
    )


def _triggers_from_schema(on: Any) -> Tuple[TriggerRule, ...]:
    if isinstance(on, str):
        return (TriggerRule(kind=on),)
    if isinstance(on, list):
        return tuple(TriggerRule(kind=k) for k in on)
    rules = []
    for kind, spec in on.items():
        subtypes = frozenset(spec.types) if spec is not None else frozenset()
        rules.append(TriggerRule(kind=kind, subtypes=subtypes))
    return tuple(rules)


def workflow_from_dict(data: Mapping[str, Any], *, default_name: str = "workflow") -> WorkflowDefinition:
    """
    Validate a workflow mapping and build the immutable definition.

    Raises:
        ConfigError: on any schema violation, an empty trigger set, or a
            broken `needs` graph
    """
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowSchema.model_validate(data)
    except ValidationError as e:
        raise ConfigError(format_validation_error(e), where=default_name)

    triggers = _triggers_from_schema(doc.on)
    if not triggers:
        raise ConfigError("workflow has no triggers", where=default_name)

    concurrency: Optional[ConcurrencyPolicy] = None
    if isinstance(doc.concurrency, str):
        concurrency = ConcurrencyPolicy(group=doc.concurrency)
    elif doc.concurrency is not None:
        concurrency = ConcurrencyPolicy(
            group=doc.concurrency.group,
            cancel_in_progress=doc.concurrency.cancel_in_progress,
            queue_policy=doc.concurrency.queue,
        )

    jobs = {job_id: _job_from_schema(job_id, job) for job_id, job in doc.jobs.items()}

    wf = WorkflowDefinition(
        name=doc.name or default_name,
        triggers=triggers,
        jobs=jobs,
        concurrency=concurrency,
        env=_str_map(doc.env),
    )
    validate_workflow(wf)
    return wf


def validate_workflow(wf: WorkflowDefinition) -> None:
    """Checks shared by YAML and Python-defined workflows."""
    if not wf.triggers:
        raise ConfigError("workflow has no triggers", where=wf.name)
    if not wf.jobs:
        raise ConfigError("workflow has no jobs", where=wf.name)
    for job_id, job in wf.jobs.items():
        if not job.steps:
            raise ConfigError(f"job {job_id!r} has no steps", where=wf.name)
        for step in job.steps:
            if not isinstance(step, (CommandStep, ActionStep)):
                raise ConfigError(f"job {job_id!r} has a non-step entry: {step!r}", where=wf.name)
            if isinstance(step, CommandStep) and not step.command.strip():
                raise ConfigError(f"step {step.name!r} has an empty command", where=f"jobs.{job_id}")
            if isinstance(step, ActionStep) and not step.action_ref.strip():
                raise ConfigError(f"step {step.name!r} has an empty action reference", where=f"jobs.{job_id}")
        for dim, values in job.matrix.dimensions.items():
            if not values:
                raise ConfigError(f"matrix dimension {dim!r} has no values", where=f"jobs.{job_id}")
    job_levels(wf.jobs)


# ----------------------------------------------------------------------
# Workflow loading (YAML document or Python file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow from a YAML document or a Python file.

    A Python file must define either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        return workflow_from_dict(read_yaml(wf_path), default_name=wf_path.stem)

    if wf_path.suffix != ".py":
        raise ConfigError(f"workflow must be a .yml/.yaml or .py file, got: {wf_path.name}")

    module_name = f"ciengine_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        wf = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, WorkflowDefinition):
        raise ConfigError(
            "Python workflow must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition or WORKFLOW = ...",
            where=str(wf_path),
        )
    validate_workflow(wf)
    return wf
