# executor.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .actions import ActionResolver, ExecutableUnit
from .cancel import CancelToken
from .errors import ConfigError, StepFailure
from .expressions import evaluate_condition, render, render_mapping, uses_status_function
from .model import (
    ActionStep,
    CommandStep,
    JobInstance,
    JobResult,
    JobStatus,
    StepResult,
    StepSpec,
    StepStatus,
)
from .process import CommandResult, CommandRunner, default_runner
from .ui.console import Console, get_console

# (unit, inputs, env, cancel) -> CommandResult
ExternalRunner = Callable[[ExecutableUnit, Mapping[str, str], Mapping[str, str], CancelToken], CommandResult]


# ----------------------------------------------------------------------
# External action collaborators
# ----------------------------------------------------------------------

def reject_external(unit: ExecutableUnit, inputs: Mapping[str, str], env: Mapping[str, str], cancel: CancelToken) -> CommandResult:
    """Default: nothing can run opaque actions, so the step fails loudly."""
    return CommandResult(
        exit_code=1,
        stderr=(
            f"no runner configured for external action {unit.fetch_key}; "
            "mirror it under the actions directory or pass an external runner"
        ),
    )


def stub_external(unit: ExecutableUnit, inputs: Mapping[str, str], env: Mapping[str, str], cancel: CancelToken) -> CommandResult:
    """Record the delegation and report success."""
    return CommandResult(exit_code=0, stdout=f"delegated external action {unit.fetch_key}")


def input_env_name(name: str) -> str:
    # "target dir" / "rust-version" -> INPUT_TARGET_DIR / INPUT_RUST-VERSION
    return "INPUT_" + name.replace(" ", "_").upper()


# ----------------------------------------------------------------------
# Per-step-list state
# ----------------------------------------------------------------------

@dataclass
class _Scope:
    """
    State of one step list: the job's own steps, or the inner steps of a
    composite action (which gets a fresh scope).
    """
    label: str
    env: Dict[str, str]
    inputs: Dict[str, str] = field(default_factory=dict)
    parents: Tuple[str, ...] = ()
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed: bool = False
    error: Optional[str] = None


@dataclass
class _Outcome:
    status: StepStatus
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    children: List[StepResult] = field(default_factory=list)


class StepExecutor:
    """
    Runs one job instance's steps in order.

    Args:
        resolver: turns `uses:` references into executable units
        command_runner: runs primitive commands (default: SubprocessRunner)
        external_runner: runs opaque external actions (default: reject_external)
        workspace: directory commands run in; `working_directory` is relative to it
        console: where progress goes (default: the global console)
    """

    def __init__(
        self,
        resolver: Optional[ActionResolver] = None,
        command_runner: Optional[CommandRunner] = None,
        external_runner: Optional[ExternalRunner] = None,
        workspace: str | Path = ".",
        console: Optional[Console] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.resolver = resolver or ActionResolver(self.workspace)
        self.command_runner = command_runner or default_runner()
        self.external_runner = external_runner or reject_external
        self._console = console

    @property
    def console(self) -> Console:
        return self._console or get_console()

    # ---- public API ----

    def run(self, job: JobInstance, *, github: Optional[Mapping[str, Any]] = None) -> JobResult:
        result = JobResult(
            name=job.name,
            template=job.template,
            matrix=dict(job.matrix),
            status=job.status,
            runs_on=job.runs_on,
        )

        if not job.start():
            # cancelled (or otherwise finished) before it got a worker
            result.steps = [self._cancelled(s) for s in job.steps]
            result.status = job.status
            result.error = job.cancel_reason
            return result

        self.console.print_job_start(job.name)
        base_ctx = {"github": dict(github or {}), "matrix": dict(job.matrix), "env": dict(job.workflow_env)}
        scope = _Scope(label=job.name, env=dict(job.workflow_env))
        result.steps = []
        try:
            scope.env.update(render_mapping(job.env, base_ctx))
            self._run_steps(job, job.steps, scope, base_ctx, result.steps)
        except Exception as e:
            # a step broke outside the step error handling; keep what already ran
            self.console.print_exception(e)
            scope.failed = True
            scope.error = str(e)
            pending = job.steps[len(result.steps):]
            if pending:
                result.steps.append(
                    StepResult(name=pending[0].name, id=pending[0].id, status=StepStatus.FAILED, error=str(e))
                )
                result.steps.extend(
                    StepResult(name=s.name, id=s.id, status=StepStatus.SKIPPED) for s in pending[1:]
                )

        # no-op when the job was cancelled meanwhile
        job.finish(JobStatus.FAILED if scope.failed else JobStatus.SUCCEEDED)

        result.status = job.status
        if job.status is JobStatus.CANCELLED:
            result.error = job.cancel_reason
        elif job.status is JobStatus.FAILED:
            result.error = scope.error
        self.console.print_job_result(result)
        return result

    # ---- step lists ----

    def _run_steps(
        self,
        job: JobInstance,
        steps: Tuple[StepSpec, ...],
        scope: _Scope,
        base_ctx: Mapping[str, Any],
        results: Optional[List[StepResult]] = None,
    ) -> List[StepResult]:
        results = [] if results is None else results
        for i, step in enumerate(steps):
            if job.cancel_token.is_cancelled():
                results.extend(self._cancelled(s) for s in steps[i:])
                break

            ctx = self._context(scope, base_ctx, job)
            try:
                should_run = self._should_run(step, scope, ctx)
            except ConfigError as e:
                self._record_failure(step, scope, _Outcome(StepStatus.FAILED, error=str(e)), results)
                continue

            if not should_run:
                self.console.print_step_skipped(scope.label, step.name)
                scope.steps[step.key] = {"outputs": {}, "outcome": "skipped", "conclusion": "skipped"}
                results.append(StepResult(name=step.name, id=step.id, status=StepStatus.SKIPPED))
                continue

            self.console.print_step(scope.label, step.name)
            started = time.monotonic()
            try:
                if isinstance(step, CommandStep):
                    outcome = self._run_command(job, step, scope, ctx)
                else:
                    outcome = self._run_action(job, step, scope, ctx, base_ctx)
            except (ConfigError, OSError, ValueError) as e:
                outcome = _Outcome(StepStatus.FAILED, error=str(e))
            duration = round(time.monotonic() - started, 3)

            if outcome.status is StepStatus.CANCELLED:
                results.append(
                    StepResult(
                        name=step.name,
                        id=step.id,
                        status=StepStatus.CANCELLED,
                        exit_code=outcome.exit_code,
                        error=job.cancel_reason,
                        duration_s=duration,
                        steps=outcome.children,
                    )
                )
                results.extend(self._cancelled(s) for s in steps[i + 1:])
                break

            if outcome.status is StepStatus.FAILED:
                self._record_failure(step, scope, outcome, results, duration)
                continue

            scope.steps[step.key] = {"outputs": dict(outcome.outputs), "outcome": "success", "conclusion": "success"}
            results.append(
                StepResult(
                    name=step.name,
                    id=step.id,
                    status=StepStatus.SUCCEEDED,
                    exit_code=outcome.exit_code,
                    outputs=dict(outcome.outputs),
                    duration_s=duration,
                    steps=outcome.children,
                )
            )
        return results

    def _record_failure(
        self,
        step: StepSpec,
        scope: _Scope,
        outcome: _Outcome,
        results: List[StepResult],
        duration: Optional[float] = None,
    ) -> None:
        conclusion = "success" if step.continue_on_error else "failure"
        scope.steps[step.key] = {"outputs": dict(outcome.outputs), "outcome": "failure", "conclusion": conclusion}
        results.append(
            StepResult(
                name=step.name,
                id=step.id,
                status=StepStatus.FAILED,
                exit_code=outcome.exit_code,
                outputs=dict(outcome.outputs),
                error=outcome.error,
                duration_s=duration,
                steps=outcome.children,
            )
        )
        self.console.print_failure(f"{scope.label} / {step.name}", outcome.error or "", exit_code=outcome.exit_code)
        if not step.continue_on_error and not scope.failed:
            scope.failed = True
            scope.error = outcome.error

    @staticmethod
    def _cancelled(step: StepSpec) -> StepResult:
        return StepResult(name=step.name, id=step.id, status=StepStatus.CANCELLED)

    # ---- conditions / context ----

    @staticmethod
    def _context(scope: _Scope, base_ctx: Mapping[str, Any], job: JobInstance) -> Dict[str, Any]:
        if job.cancel_token.is_cancelled():
            status = "cancelled"
        elif scope.failed:
            status = "failure"
        else:
            status = "success"
        return {
            **base_ctx,
            "env": dict(scope.env),
            "inputs": dict(scope.inputs),
            "steps": {k: dict(v) for k, v in scope.steps.items()},
            "job": {"status": status},
            "runner": {"os": job.runs_on},
        }

    @staticmethod
    def _should_run(step: StepSpec, scope: _Scope, ctx: Mapping[str, Any]) -> bool:
        condition = step.condition
        if scope.failed:
            # only explicit status checks run after a failure
            return (
                isinstance(condition, str)
                and uses_status_function(condition)
                and evaluate_condition(condition, ctx)
            )
        if condition is None:
            return True
        if isinstance(condition, str):
            return evaluate_condition(condition, ctx)
        return bool(condition(ctx))

    # ---- step kinds ----

    def _run_command(self, job: JobInstance, step: CommandStep, scope: _Scope, ctx: Mapping[str, Any]) -> _Outcome:
        env = dict(scope.env)
        env.update(render_mapping(step.env, ctx))
        env.update(render_mapping(step.inputs, ctx))

        command = render(step.command, ctx)
        cwd = self.workspace
        if step.working_directory:
            cwd = (self.workspace / render(step.working_directory, ctx)).resolve()

        res = self.command_runner(command, cwd=cwd, env=env, cancel=job.cancel_token)
        return self._from_command_result(job, scope, step, res)

    def _run_action(
        self,
        job: JobInstance,
        step: ActionStep,
        scope: _Scope,
        ctx: Mapping[str, Any],
        base_ctx: Mapping[str, Any],
    ) -> _Outcome:
        unit = self.resolver.resolve(render(step.action_ref, ctx), parents=scope.parents)
        inputs = unit.bind_inputs(render_mapping(step.inputs, ctx))

        env = dict(scope.env)
        env.update(render_mapping(step.env, ctx))

        if unit.kind == "external":
            env.update({input_env_name(k): v for k, v in inputs.items()})
            self.console.print_debug(f"[{scope.label}] delegating {unit.fetch_key}")
            res = self.external_runner(unit, inputs, env, job.cancel_token)
            return self._from_command_result(job, scope, step, res)

        inner = _Scope(
            label=f"{scope.label} / {step.name}",
            env=env,
            inputs=inputs,
            parents=scope.parents + (unit.identity,),
        )
        children = self._run_steps(job, unit.steps, inner, base_ctx)

        if job.cancel_token.is_cancelled():
            return _Outcome(StepStatus.CANCELLED, children=children)

        inner_ctx = self._context(inner, base_ctx, job)
        outputs = {name: render(expr, inner_ctx) for name, expr in unit.outputs.items()}
        if inner.failed:
            return _Outcome(StepStatus.FAILED, outputs=outputs, error=inner.error, children=children)
        return _Outcome(StepStatus.SUCCEEDED, outputs=outputs, children=children)

    @staticmethod
    def _from_command_result(job: JobInstance, scope: _Scope, step: StepSpec, res: CommandResult) -> _Outcome:
        if res.cancelled or (res.exit_code != 0 and job.cancel_token.is_cancelled()):
            return _Outcome(StepStatus.CANCELLED, exit_code=res.exit_code)
        if res.exit_code != 0:
            failure = StepFailure(
                job=scope.label,
                step=step.name,
                exit_code=res.exit_code,
                message=(res.stderr or res.stdout or "").strip()[-500:],
            )
            return _Outcome(StepStatus.FAILED, exit_code=res.exit_code, outputs=dict(res.outputs), error=str(failure))
        return _Outcome(StepStatus.SUCCEEDED, exit_code=res.exit_code, outputs=dict(res.outputs))
