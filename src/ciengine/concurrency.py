# concurrency.py
from __future__ import annotations

import threading
import weakref
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterator, List, Mapping, Optional

from .expressions import render
from .model import ConcurrencyPolicy, Run

# ----------------------------------------------------------------------
# Core idea
# ----------------------------------------------------------------------
# One global namespace of "active runs", owned exclusively by the manager:
#
#   key -> _Group(active: weakref(Run) | None, queue: deque[Run])
#
# Every decision for a key happens while holding that key's condition
# variable, so two concurrent admissions can never both believe they are the
# active run. Entries are populated on admission and cleared on release.
# ----------------------------------------------------------------------


class AdmissionKind(str, Enum):
    START = "start"
    CANCEL_AND_START = "cancel_and_start"
    QUEUE = "queue"


@dataclass(frozen=True)
class AdmissionDecision:
    kind: AdmissionKind
    key: str | None = None
    previous_run_id: str | None = None
    superseded_run_ids: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "previous_run_id": self.previous_run_id,
            "superseded_run_ids": list(self.superseded_run_ids),
        }


@dataclass
class RunRequest:
    run: Run
    key: str | None
    cancel_in_progress: bool = False
    queue_policy: str = "fifo"


@dataclass
class _Group:
    key: str
    cond: threading.Condition = field(default_factory=threading.Condition)
    active: Optional[weakref.ref] = None
    queue: Deque[Run] = field(default_factory=deque)
    retired: bool = False

    def active_run(self) -> Optional[Run]:
        run = self.active() if self.active is not None else None
        if run is None or run.is_terminal:
            return None
        return run


def render_group_key(
    template: str | None,
    *,
    workflow: str,
    ref: str,
    event_name: str = "",
    extra: Mapping[str, Any] | None = None,
) -> str | None:
    """
    Substitute the workflow name and ref into a key template.

    Both `${{ github.workflow }}` and the `${github.workflow}` shorthand work.
    """
    if not template:
        return None
    ctx: Dict[str, Any] = {
        "github": {"workflow": workflow, "ref": ref, "event_name": event_name},
        "workflow": workflow,
        "ref": ref,
    }
    if extra:
        ctx.update(extra)
    return render(template, ctx, shorthand=True)


class ConcurrencyGroupManager:
    """Enforces at-most-one-active-run per group key."""

    def __init__(self) -> None:
        self._groups: Dict[str, _Group] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _locked(self, key: str) -> Iterator[_Group]:
        """Hold the condition of the live group for `key`, creating it if needed."""
        while True:
            with self._registry_lock:
                group = self._groups.get(key)
                if group is None:
                    group = _Group(key=key)
                    self._groups[key] = group
            with group.cond:
                # released and dropped while we waited for it; take the new one
                if group.retired:
                    continue
                yield group
                return

    def _retire_if_idle(self, group: _Group) -> None:
        # caller holds group.cond
        if group.active is not None or group.queue:
            return
        group.retired = True
        with self._registry_lock:
            if self._groups.get(group.key) is group:
                del self._groups[group.key]

    def _wake(self, key: str) -> None:
        with self._registry_lock:
            group = self._groups.get(key)
        if group is not None:
            with group.cond:
                group.cond.notify_all()

    # ---- queries ----

    def active_run(self, key: str) -> Optional[Run]:
        with self._registry_lock:
            group = self._groups.get(key)
        if group is None:
            return None
        with group.cond:
            return group.active_run()

    def queued_runs(self, key: str) -> List[Run]:
        with self._registry_lock:
            group = self._groups.get(key)
        if group is None:
            return []
        with group.cond:
            return list(group.queue)

    def group_count(self) -> int:
        """Number of keys with an active or queued run."""
        with self._registry_lock:
            return len(self._groups)

    # ---- admission ----

    @staticmethod
    def request_for(run: Run, policy: ConcurrencyPolicy | None) -> RunRequest:
        if policy is None:
            return RunRequest(run=run, key=run.concurrency_key)
        return RunRequest(
            run=run,
            key=run.concurrency_key,
            cancel_in_progress=policy.cancel_in_progress,
            queue_policy=policy.queue_policy,
        )

    def admit(self, request: RunRequest) -> AdmissionDecision:
        """
        Decide whether a run starts now, preempts the active run, or queues.

        The previous run (CANCEL_AND_START) is cancelled inside the critical
        section, so by the time admit() returns it is already terminal.
        """
        run = request.run
        if request.key is None:
            return AdmissionDecision(AdmissionKind.START)

        with self._locked(request.key) as group:
            superseded: List[str] = []
            if request.queue_policy == "supersede" and group.queue:
                while group.queue:
                    waiting = group.queue.popleft()
                    waiting.cancel(f"superseded by run {run.id}")
                    superseded.append(waiting.id)
                group.cond.notify_all()

            current = group.active_run()
            if current is None and not group.queue:
                group.active = weakref.ref(run)
                return AdmissionDecision(AdmissionKind.START, request.key, superseded_run_ids=tuple(superseded))

            previous_id = current.id if current is not None else None
            if request.cancel_in_progress:
                if current is not None:
                    current.cancel(f"cancelled by newer run {run.id} in group {request.key}")
                # anything still queued behind the preempted run is obsolete too
                while group.queue:
                    waiting = group.queue.popleft()
                    waiting.cancel(f"superseded by run {run.id}")
                    superseded.append(waiting.id)
                group.active = weakref.ref(run)
                group.cond.notify_all()
                return AdmissionDecision(
                    AdmissionKind.CANCEL_AND_START,
                    request.key,
                    previous_run_id=previous_id,
                    superseded_run_ids=tuple(superseded),
                )

            group.queue.append(run)

        # a queued run cancelled from anywhere must stop waiting
        key = request.key
        run.cancel_token.on_cancel(lambda _reason: self._wake(key))
        return AdmissionDecision(
            AdmissionKind.QUEUE,
            request.key,
            previous_run_id=previous_id,
            superseded_run_ids=tuple(superseded),
        )

    def wait_until_active(self, run: Run, timeout: float | None = None) -> bool:
        """
        Block a queued run until it is promoted (True) or cancelled while
        waiting (False). Returns False on timeout as well.
        """
        if run.concurrency_key is None:
            return not run.preempted

        with self._locked(run.concurrency_key) as group:
            ok = group.cond.wait_for(
                lambda: run.preempted or (group.active is not None and group.active() is run),
                timeout=timeout,
            )
            if not ok or run.preempted:
                if run in group.queue:
                    group.queue.remove(run)
                self._retire_if_idle(group)
                return False
            return True

    def release(self, run: Run) -> Optional[Run]:
        """
        Clear the run's slot and promote the next queued run (FIFO).

        Returns the promoted run, if any. Releasing a run that is no longer
        the active one (it was preempted) is a no-op. A key left with neither
        an active nor a queued run is dropped.
        """
        if run.concurrency_key is None:
            return None

        with self._locked(run.concurrency_key) as group:
            if run in group.queue:
                group.queue.remove(run)
            active = group.active() if group.active is not None else None
            if active is not run and active is not None:
                return None

            group.active = None
            promoted: Optional[Run] = None
            while group.queue:
                candidate = group.queue.popleft()
                if not candidate.preempted:
                    promoted = candidate
                    group.active = weakref.ref(candidate)
                    break
            group.cond.notify_all()
            self._retire_if_idle(group)
            return promoted
