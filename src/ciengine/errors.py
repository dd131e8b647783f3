# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class EngineError(Exception):
    """Base class for everything ciengine raises on purpose."""


class ConfigError(EngineError):
    """
    Malformed or missing workflow/action configuration.

    Raised at load time (or while resolving actions) and never recovered
    inside a run: a run whose definition is broken is never admitted.
    """

    def __init__(self, message: str, *, where: str | None = None):
        self.message = message
        self.where = where
        super().__init__(message if not where else f"{where}: {message}")


class CyclicActionError(ConfigError):
    """An action (transitively) references itself."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("action reference cycle: " + " -> ".join(self.cycle))


@dataclass
class StepFailure(EngineError):
    """
    A step exited non-zero or its action reported failure.

    Recorded on the step result; the executor never lets it escape the job.
    """
    job: str
    step: str
    exit_code: int | None
    message: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"]
        if self.message:
            lines.append(self.message)
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class CancellationError(EngineError):
    """Not a real failure: the target was preempted or a fail-fast sibling failed."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)
