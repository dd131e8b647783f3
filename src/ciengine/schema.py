"""
Document schemas for workflow and composite-action YAML files.

These mirror the GitHub-Actions-shaped keys (`runs-on`, `fail-fast`,
`continue-on-error`, ...) through aliases; the loader turns them into the
immutable records in `ciengine.model`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Scalar = Union[str, int, float, bool]


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# -------------------- Steps --------------------

class StepSchema(_Schema):
    name: Optional[str] = None
    id: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Optional[Scalar]] = Field(default_factory=dict, alias="with")
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    shell: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> "StepSchema":
        if bool(self.uses) == bool(self.run):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        if self.uses and self.working_directory:
            raise ValueError("'working-directory' only applies to 'run' steps")
        return self


# -------------------- Workflow --------------------

class StrategySchema(_Schema):
    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)

    @field_validator("matrix")
    @classmethod
    def _matrix_shape(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for key, values in v.items():
            if key in ("include", "exclude"):
                if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                    raise ValueError(f"matrix.{key} must be a list of mappings")
                continue
            if not isinstance(values, list):
                raise ValueError(f"matrix dimension '{key}' must be a list")
            if not values:
                raise ValueError(f"matrix dimension '{key}' has no values")
        return v


class JobSchema(_Schema):
    name: Optional[str] = None
    runs_on: Optional[str] = Field(default=None, alias="runs-on")
    needs: Union[str, List[str]] = Field(default_factory=list)
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    strategy: Optional[StrategySchema] = None
    steps: List[StepSchema] = Field(min_length=1)

    @field_validator("needs")
    @classmethod
    def _needs_list(cls, v: Union[str, List[str]]) -> List[str]:
        return [v] if isinstance(v, str) else v


class ConcurrencySchema(_Schema):
    group: str
    cancel_in_progress: bool = Field(default=False, alias="cancel-in-progress")
    queue: Literal["fifo", "supersede"] = "fifo"


class TriggerSchema(_Schema):
    types: List[str] = Field(default_factory=list)

    @field_validator("types", mode="before")
    @classmethod
    def _types_list(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class WorkflowSchema(_Schema):
    name: Optional[str] = None
    on: Union[str, List[str], Dict[str, Optional[TriggerSchema]]]
    concurrency: Optional[Union[str, ConcurrencySchema]] = None
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    jobs: Dict[str, JobSchema] = Field(min_length=1)


# -------------------- Composite actions --------------------

class ActionInputSchema(_Schema):
    description: Optional[str] = None
    required: bool = False
    default: Optional[Scalar] = None
    deprecation_message: Optional[str] = Field(default=None, alias="deprecationMessage")


class ActionOutputSchema(_Schema):
    description: Optional[str] = None
    value: Optional[str] = None


class ActionRunsSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    using: str
    steps: List[StepSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def _composite_needs_steps(self) -> "ActionRunsSchema":
        if self.using == "composite" and not self.steps:
            raise ValueError("composite action has no steps")
        return self


class ActionSchema(BaseModel):
    # branding, author, ... are metadata we don't use
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    description: Optional[str] = None
    inputs: Dict[str, Optional[ActionInputSchema]] = Field(default_factory=dict)
    outputs: Dict[str, Optional[ActionOutputSchema]] = Field(default_factory=dict)
    runs: ActionRunsSchema
