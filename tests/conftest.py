from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Union

import pytest

from ciengine.cancel import CancelToken
from ciengine.executor import StepExecutor
from ciengine.process import CommandResult
from ciengine.ui.console import Console, get_console, set_console


@dataclass
class Call:
    command: str
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)


Action = Union[int, CommandResult, Callable[[str, Mapping[str, str], CancelToken], CommandResult]]


class FakeRunner:
    """
    Stands in for SubprocessRunner. `script` maps a substring of the command
    to an exit code, a CommandResult, or a callable producing one; anything
    unmatched succeeds.
    """

    def __init__(self, script: Dict[str, Action] | None = None):
        self.script: Dict[str, Action] = dict(script or {})
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def __call__(self, command, *, cwd, env, cancel):
        with self._lock:
            self.calls.append(Call(command, Path(cwd), dict(env)))
        for needle, action in self.script.items():
            if needle in command:
                if isinstance(action, int):
                    return CommandResult(exit_code=action)
                if isinstance(action, CommandResult):
                    return action
                return action(command, env, cancel)
        return CommandResult(exit_code=0)

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [c.command for c in self.calls]


def blocking(started: threading.Event, release: threading.Event, exit_code: int = 0):
    """A scripted action that blocks until released or cancelled."""

    def action(command, env, cancel):
        started.set()
        while not release.wait(0.01):
            if cancel.is_cancelled():
                return CommandResult(exit_code=137, cancelled=True)
        return CommandResult(exit_code=exit_code)

    return action


@pytest.fixture(autouse=True)
def quiet_console():
    previous = get_console()
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(previous)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_executor(tmp_path):
    def make(runner, **kwargs) -> StepExecutor:
        kwargs.setdefault("workspace", tmp_path)
        return StepExecutor(command_runner=runner, **kwargs)

    return make


def write_action(root: Path, rel: str, text: str) -> Path:
    d = root / rel
    d.mkdir(parents=True, exist_ok=True)
    path = d / "action.yml"
    path.write_text(text, encoding="utf-8")
    return path
