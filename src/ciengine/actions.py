# actions.py
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple

from pydantic import ValidationError

from .errors import ConfigError, CyclicActionError
from .expressions import stringify
from .loader import format_validation_error, read_yaml, steps_from_schema
from .model import ActionStep, StepSpec
from .schema import ActionSchema

LOCAL_PREFIX = "./"
ACTION_FILES = ("action.yml", "action.yaml")
DEFAULT_MAX_DEPTH = 16

# owner/repo[/sub/path][/]@version ; the stray "/" before "@" shows up in real workflows
EXTERNAL_REF = re.compile(
    r"^(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+)"
    r"(?P<path>(?:/[A-Za-z0-9_.-]+)*)/?@(?P<version>[A-Za-z0-9_.\-/+]+)$"
)


# ----------------------------------------------------------------------
# References
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ActionRef:
    raw: str
    local_path: str | None = None
    owner: str | None = None
    repo: str | None = None
    subpath: str = ""
    version: str | None = None

    @property
    def is_local(self) -> bool:
        return self.local_path is not None

    @property
    def fetch_key(self) -> str:
        """What an action-fetching collaborator needs: owner/repo[/path]@version."""
        if self.is_local:
            raise ValueError(f"local action {self.raw!r} has no fetch key")
        return f"{self.owner}/{self.repo}{self.subpath}@{self.version}"


def parse_action_ref(raw: str) -> ActionRef:
    """
    Validate the shape of a `uses:` reference.

    Raises:
        ConfigError: for docker references, templated or malformed refs
    """
    ref = (raw or "").strip()
    if not ref:
        raise ConfigError("empty action reference")
    if "${{" in ref:
        raise ConfigError(f"action reference is not resolved yet: {ref}")
    if ref.startswith("docker://"):
        raise ConfigError(f"docker actions are not supported: {ref}")
    if ref.startswith(LOCAL_PREFIX):
        path = ref[len(LOCAL_PREFIX):].strip("/")
        if not path or ".." in Path(path).parts:
            raise ConfigError(f"invalid local action path: {ref}")
        return ActionRef(raw=ref, local_path=path)

    m = EXTERNAL_REF.match(ref)
    if not m:
        raise ConfigError(
            f"malformed action reference {ref!r}; expected ./local/path or owner/repo[/path]@version"
        )
    return ActionRef(
        raw=ref,
        owner=m.group("owner"),
        repo=m.group("repo"),
        subpath=m.group("path") or "",
        version=m.group("version"),
    )


# ----------------------------------------------------------------------
# Executable units
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ActionInput:
    name: str
    required: bool = False
    default: str | None = None


@dataclass(frozen=True)
class ExecutableUnit:
    """
    What a resolved action reference runs as.

    kind == "composite": `steps` run through the Step Executor (recursively).
    kind == "external":  opaque; handed to the external-action collaborator
                         with `fetch_key`.
    """
    identity: str
    ref: ActionRef
    kind: str
    name: str = ""
    steps: Tuple[StepSpec, ...] = ()
    inputs: Tuple[ActionInput, ...] = ()
    outputs: Mapping[str, str] = field(default_factory=dict)

    @property
    def fetch_key(self) -> str | None:
        return None if self.ref.is_local else self.ref.fetch_key

    def bind_inputs(self, given: Mapping[str, str]) -> Dict[str, str]:
        """Declared defaults overlaid with the caller's `with:` values."""
        bound: Dict[str, str] = {}
        missing = []
        for spec in self.inputs:
            if spec.name in given:
                bound[spec.name] = given[spec.name]
            elif spec.default is not None:
                bound[spec.name] = spec.default
            elif spec.required:
                missing.append(spec.name)
            else:
                bound[spec.name] = ""
        if missing:
            raise ConfigError(f"action {self.ref.raw!r} is missing required inputs: {missing}")
        for k, v in given.items():
            bound.setdefault(k, v)
        return bound


def unit_from_definition(ref: ActionRef, identity: str, data: Mapping[str, Any], *, where: str) -> ExecutableUnit:
    try:
        doc = ActionSchema.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(format_validation_error(e), where=where)

    inputs = tuple(
        ActionInput(
            name=name,
            required=bool(spec and spec.required),
            default=stringify(spec.default) if spec and spec.default is not None else None,
        )
        for name, spec in doc.inputs.items()
    )
    outputs = {name: (spec.value or "") for name, spec in doc.outputs.items() if spec is not None}

    if doc.runs.using != "composite":
        return ExecutableUnit(identity=identity, ref=ref, kind="external", name=doc.name, inputs=inputs)

    return ExecutableUnit(
        identity=identity,
        ref=ref,
        kind="composite",
        name=doc.name,
        steps=steps_from_schema(doc.runs.steps, where=where),
        inputs=inputs,
        outputs=outputs,
    )


# ----------------------------------------------------------------------
# Fetchers (external references)
# ----------------------------------------------------------------------

class ActionFetcher(Protocol):
    def fetch(self, ref: ActionRef) -> Optional[Mapping[str, Any]]:
        """Return the action's definition, or None to run it opaquely."""
        ...


class NullFetcher:
    """Fetches nothing: every external action is delegated as an opaque unit."""

    def fetch(self, ref: ActionRef) -> Optional[Mapping[str, Any]]:
        return None


class DirectoryFetcher:
    """
    Looks external actions up in a local mirror:
      root/<owner>/<repo>@<version>/<subpath>/action.yml
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def fetch(self, ref: ActionRef) -> Optional[Mapping[str, Any]]:
        base = self.root / ref.owner / f"{ref.repo}@{ref.version}"
        if ref.subpath:
            base = base / ref.subpath.strip("/")
        for fname in ACTION_FILES:
            candidate = base / fname
            if candidate.exists():
                return read_yaml(candidate)
        return None


# ----------------------------------------------------------------------
# Resolver
# ----------------------------------------------------------------------

class ActionResolver:
    """
    Resolves `uses:` references into executable units.

    Resolution walks nested composite actions depth first, carrying the
    identities on the current path; meeting one again is a CyclicActionError.
    Units are memoised only after their whole subtree resolved.
    """

    def __init__(
        self,
        workspace: str | Path = ".",
        fetcher: ActionFetcher | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.workspace = Path(workspace).resolve()
        self.fetcher = fetcher or NullFetcher()
        self.max_depth = max_depth
        self._units: Dict[str, ExecutableUnit] = {}
        self._lock = threading.Lock()

    def identity(self, ref: ActionRef) -> str:
        if ref.is_local:
            return "local:" + str((self.workspace / ref.local_path).resolve())
        return ref.fetch_key

    def resolve(self, action_ref: str, *, parents: Iterable[str] = ()) -> ExecutableUnit:
        """
        Args:
            action_ref: the raw `uses:` string
            parents: identities of the composite actions currently executing
                the step (run-time nesting), checked for cycles too
        """
        return self._resolve(parse_action_ref(action_ref), tuple(parents))

    def _resolve(self, ref: ActionRef, path: Tuple[str, ...]) -> ExecutableUnit:
        identity = self.identity(ref)
        if identity in path:
            raise CyclicActionError([*path[path.index(identity):], identity])
        if len(path) >= self.max_depth:
            raise ConfigError(f"action nesting deeper than {self.max_depth}: {' -> '.join([*path, identity])}")

        with self._lock:
            cached = self._units.get(identity)
        if cached is not None:
            return cached

        unit = self._load(ref, identity)
        for step in unit.steps:
            if isinstance(step, ActionStep) and "${{" not in step.action_ref:
                self._resolve(parse_action_ref(step.action_ref), path + (identity,))

        with self._lock:
            self._units.setdefault(identity, unit)
        return unit

    def _load(self, ref: ActionRef, identity: str) -> ExecutableUnit:
        if ref.is_local:
            action_dir = self.workspace / ref.local_path
            for fname in ACTION_FILES:
                candidate = action_dir / fname
                if candidate.exists():
                    return unit_from_definition(ref, identity, read_yaml(candidate), where=str(candidate))
            raise ConfigError(f"local action not found (no action.yml in {action_dir})", where=ref.raw)

        definition = self.fetcher.fetch(ref)
        if definition is None:
            return ExecutableUnit(identity=identity, ref=ref, kind="external", name=ref.fetch_key)
        return unit_from_definition(ref, identity, definition, where=ref.fetch_key)

    def validate(self, steps: Iterable[StepSpec]) -> int:
        """Eagerly resolve every action a step list uses. Returns how many were resolved."""
        count = 0
        for step in steps:
            if isinstance(step, ActionStep) and "${{" not in step.action_ref:
                self.resolve(step.action_ref)
                count += 1
        return count
