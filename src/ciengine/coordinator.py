# coordinator.py
from __future__ import annotations

import os
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Any, Deque, Dict, List, Optional

from .concurrency import AdmissionDecision, AdmissionKind, ConcurrencyGroupManager, render_group_key
from .dag import build_dag, topo_levels
from .executor import StepExecutor
from .matrix import expand_template
from .model import (
    Event,
    JobInstance,
    JobResult,
    JobStatus,
    Run,
    RunOutcome,
    WorkflowDefinition,
)
from .triggers import accepts
from .ui.console import Console, get_console


def _default_workers() -> int:
    from .settings import MAX_WORKERS

    if MAX_WORKERS:
        return MAX_WORKERS
    c = os.cpu_count() or 2
    return max(1, c - 1)


class RunCoordinator:
    """
    Takes events for one workflow through the whole pipeline:

        trigger gate -> group key -> admission -> matrix expansion
          -> job dispatch (needs order, fail-fast) -> aggregation -> release

    The concurrency manager can be shared between coordinators so that
    several workflows compete for the same group keys.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        executor: Optional[StepExecutor] = None,
        manager: Optional[ConcurrencyGroupManager] = None,
        max_workers: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        self.workflow = workflow
        self.executor = executor or StepExecutor()
        self.manager = manager or ConcurrencyGroupManager()
        self.max_workers = max_workers or _default_workers()
        self._console = console
        self._runs_pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    @property
    def console(self) -> Console:
        return self._console or get_console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def handle(self, event: Event) -> Optional[RunOutcome]:
        """
        Process one event to completion.

        Returns None if the workflow's triggers reject the event, otherwise
        the finished run's outcome (also for runs cancelled while queued).

        Raises:
            ConfigError: the workflow's triggers are malformed
        """
        wf = self.workflow
        if not accepts(event, wf.triggers):
            self.console.print_event_ignored(wf.name, self._event_label(event))
            return None

        policy = wf.concurrency
        key = render_group_key(
            policy.group if policy else None,
            workflow=wf.name,
            ref=event.ref,
            event_name=event.kind,
        )
        run = Run(wf, event, concurrency_key=key)
        decision = self.manager.admit(self.manager.request_for(run, policy))

        self.console.print_run_started(wf.name, run.id, self._event_label(event), key)
        self.console.print_admission(decision)

        try:
            if decision.kind is AdmissionKind.QUEUE and not self.manager.wait_until_active(run):
                run.cancel("superseded while queued")
                return self._outcome(run, decision, {})

            run.mark_running()
            results = self._execute(run)
            return self._outcome(run, decision, results)
        except BaseException:
            run.cancel("run aborted")
            raise
        finally:
            self.manager.release(run)

    def submit(self, event: Event) -> "Future[Optional[RunOutcome]]":
        """Handle `event` on a background thread; several runs may be in flight."""
        with self._pool_lock:
            if self._runs_pool is None:
                self._runs_pool = ThreadPoolExecutor(thread_name_prefix="ciengine-run")
            pool = self._runs_pool
        return pool.submit(self.handle, event)

    def shutdown(self, wait: bool = True) -> None:
        with self._pool_lock:
            pool, self._runs_pool = self._runs_pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _event_label(event: Event) -> str:
        label = event.kind if not event.subtype else f"{event.kind}.{event.subtype}"
        return f"{label} {event.ref}".strip()

    def _github_context(self, run: Run) -> Dict[str, Any]:
        event = run.event
        return {
            "workflow": self.workflow.name,
            "ref": event.ref,
            "event_name": event.kind,
            "event": {"action": event.subtype, **dict(event.payload)},
            "run_id": run.id,
        }

    def _outcome(self, run: Run, decision: AdmissionDecision, results: Dict[JobInstance, JobResult]) -> RunOutcome:
        status = run.finalize()
        outcome = RunOutcome(
            run_id=run.id,
            workflow=self.workflow.name,
            status=status,
            concurrency_key=run.concurrency_key,
            decision=decision,
            jobs=[results[j] for j in run.jobs if j in results],
        )
        self.console.print_results(outcome)
        return outcome

    def _execute(self, run: Run) -> Dict[JobInstance, JobResult]:
        wf = self.workflow
        adj, indeg = build_dag(wf.jobs)
        order = [name for level in topo_levels(adj, indeg, order=list(wf.jobs)) for name in level]

        # expand everything up front so a preemption reaches every instance
        instances: Dict[str, List[JobInstance]] = {}
        for tid in order:
            instances[tid] = expand_template(wf.jobs[tid], wf.env)
            run.add_jobs(instances[tid])

        github = self._github_context(run)
        indeg = dict(indeg)
        blocked_by: Dict[str, List[str]] = {tid: [] for tid in wf.jobs}

        waiting: Dict[str, Deque[JobInstance]] = {}
        running: Dict[str, int] = {tid: 0 for tid in wf.jobs}
        results: Dict[JobInstance, JobResult] = {}
        in_flight: Dict[Future, tuple] = {}

        def unlock(tid: str) -> None:
            if blocked_by[tid]:
                reason = f"needs {', '.join(blocked_by[tid])} which did not succeed"
                for job in instances[tid]:
                    job.cancel(reason)
            waiting[tid] = deque(instances[tid])
            if not instances[tid]:
                complete(tid)

        def complete(tid: str) -> None:
            del waiting[tid]
            succeeded = all(j.status is JobStatus.SUCCEEDED for j in instances[tid])
            for child in sorted(adj[tid], key=order.index):
                if not succeeded:
                    blocked_by[child].append(tid)
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlock(child)

        for tid in [t for t in order if indeg[t] == 0]:
            unlock(tid)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ciengine-job") as pool:
            while waiting or in_flight:
                # schedule everything currently allowed to run
                for tid in [t for t in order if t in waiting]:
                    limit = wf.jobs[tid].max_parallel
                    queue = waiting[tid]
                    while queue and (limit is None or running[tid] < limit):
                        job = queue.popleft()
                        fut = pool.submit(self.executor.run, job, github=github)
                        in_flight[fut] = (tid, job)
                        running[tid] += 1

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                tid, job = in_flight.pop(fut)
                running[tid] -= 1

                try:
                    res = fut.result()
                except Exception as e:
                    self.console.print_exception(e)
                    job.finish(JobStatus.FAILED)
                    res = JobResult(
                        name=job.name,
                        template=job.template,
                        matrix=dict(job.matrix),
                        status=job.status,
                        runs_on=job.runs_on,
                        error=str(e),
                    )
                results[job] = res

                if res.status is JobStatus.FAILED and job.fail_fast:
                    for sibling in run.cancel_siblings(job):
                        self.console.print_debug(f"fail-fast: cancelled {sibling.name}")

                if waiting[tid] or running[tid]:
                    continue

                # template finished: release its dependents
                complete(tid)

        return results
