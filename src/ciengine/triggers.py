# triggers.py
from __future__ import annotations

from typing import Iterable

from .errors import ConfigError
from .model import Event, TriggerRule


def accepts(event: Event, triggers: Iterable[TriggerRule]) -> bool:
    """
    Decide whether `event` starts a run.

    An event is accepted iff its kind matches a trigger kind AND (the trigger
    has no subtype filter OR event.subtype is one of the listed subtypes).

    Raises:
        ConfigError: if the trigger set is empty or malformed
    """
    rules = list(triggers) if triggers is not None else []
    if not rules:
        raise ConfigError("workflow has no triggers")

    for rule in rules:
        if not isinstance(rule, TriggerRule) or not rule.kind:
            raise ConfigError(f"malformed trigger: {rule!r}")

    for rule in rules:
        if rule.kind != event.kind:
            continue
        if not rule.subtypes or event.subtype in rule.subtypes:
            return True
    return False
