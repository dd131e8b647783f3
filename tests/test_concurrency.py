import threading

from ciengine.concurrency import (
    AdmissionKind,
    ConcurrencyGroupManager,
    RunRequest,
    render_group_key,
)
from ciengine.model import (
    CommandStep,
    ConcurrencyPolicy,
    Event,
    JobStatus,
    JobTemplate,
    Run,
    RunStatus,
    TriggerRule,
    WorkflowDefinition,
)
from ciengine.matrix import expand_template

WF = WorkflowDefinition(
    name="Test",
    triggers=(TriggerRule("pull_request"),),
    jobs={"test": JobTemplate(name="test", steps=(CommandStep(name="t", command="true"),))},
    concurrency=ConcurrencyPolicy(group="${{ github.workflow }}-${{ github.ref }}", cancel_in_progress=True),
)


def make_run(key="Test-refs/pull/7/merge"):
    return Run(WF, Event("pull_request", "synchronize", ref="refs/pull/7/merge"), concurrency_key=key)


def test_render_group_key():
    key = render_group_key("${{ github.workflow }}-${{ github.ref }}", workflow="Test", ref="refs/pull/7/merge")
    assert key == "Test-refs/pull/7/merge"
    assert render_group_key("${workflow}/${ref}", workflow="CI", ref="main") == "CI/main"
    assert render_group_key(None, workflow="CI", ref="main") is None


def test_no_key_always_starts():
    mgr = ConcurrencyGroupManager()
    run = make_run(key=None)
    decision = mgr.admit(RunRequest(run, None, cancel_in_progress=True))
    assert decision.kind is AdmissionKind.START
    assert mgr.release(run) is None


def test_first_run_starts_and_becomes_active():
    mgr = ConcurrencyGroupManager()
    run = make_run()
    decision = mgr.admit(RunRequest(run, run.concurrency_key, cancel_in_progress=True))
    assert decision.kind is AdmissionKind.START
    assert mgr.active_run(run.concurrency_key) is run


def test_cancel_in_progress_preempts_the_active_run():
    mgr = ConcurrencyGroupManager()
    r1, r2 = make_run(), make_run()
    mgr.admit(RunRequest(r1, r1.concurrency_key, cancel_in_progress=True))
    r1.mark_running()
    jobs = expand_template(WF.jobs["test"])
    r1.add_jobs(jobs)
    jobs[0].start()

    decision = mgr.admit(RunRequest(r2, r2.concurrency_key, cancel_in_progress=True))

    assert decision.kind is AdmissionKind.CANCEL_AND_START
    assert decision.previous_run_id == r1.id
    assert r1.status is RunStatus.CANCELLED
    assert jobs[0].status is JobStatus.CANCELLED
    assert jobs[0].cancel_token.is_cancelled()
    assert mgr.active_run(r1.concurrency_key) is r2


def test_releasing_a_preempted_run_keeps_the_new_one_active():
    mgr = ConcurrencyGroupManager()
    r1, r2 = make_run(), make_run()
    mgr.admit(RunRequest(r1, r1.concurrency_key, cancel_in_progress=True))
    mgr.admit(RunRequest(r2, r2.concurrency_key, cancel_in_progress=True))
    r1.finalize()
    assert mgr.release(r1) is None
    assert mgr.active_run(r2.concurrency_key) is r2


def test_different_keys_do_not_interact():
    mgr = ConcurrencyGroupManager()
    r1, r2 = make_run("Test-refs/heads/a"), make_run("Test-refs/heads/b")
    assert mgr.admit(RunRequest(r1, r1.concurrency_key, cancel_in_progress=True)).kind is AdmissionKind.START
    assert mgr.admit(RunRequest(r2, r2.concurrency_key, cancel_in_progress=True)).kind is AdmissionKind.START
    assert not r1.preempted


def test_without_cancel_in_progress_runs_queue_fifo():
    mgr = ConcurrencyGroupManager()
    r1, r2, r3 = make_run(), make_run(), make_run()
    key = r1.concurrency_key
    assert mgr.admit(RunRequest(r1, key)).kind is AdmissionKind.START
    assert mgr.admit(RunRequest(r2, key)).kind is AdmissionKind.QUEUE
    assert mgr.admit(RunRequest(r3, key)).kind is AdmissionKind.QUEUE
    assert mgr.queued_runs(key) == [r2, r3]

    r1.finalize()
    assert mgr.release(r1) is r2
    assert mgr.wait_until_active(r2, timeout=1)
    assert mgr.queued_runs(key) == [r3]


def test_supersede_policy_cancels_queued_runs():
    mgr = ConcurrencyGroupManager()
    r1, r2, r3 = make_run(), make_run(), make_run()
    key = r1.concurrency_key
    mgr.admit(RunRequest(r1, key, queue_policy="supersede"))
    mgr.admit(RunRequest(r2, key, queue_policy="supersede"))

    decision = mgr.admit(RunRequest(r3, key, queue_policy="supersede"))

    assert decision.kind is AdmissionKind.QUEUE
    assert decision.superseded_run_ids == (r2.id,)
    assert r2.preempted
    assert not mgr.wait_until_active(r2, timeout=1)
    assert mgr.queued_runs(key) == [r3]


def test_wait_until_active_times_out():
    mgr = ConcurrencyGroupManager()
    r1, r2 = make_run(), make_run()
    mgr.admit(RunRequest(r1, r1.concurrency_key))
    mgr.admit(RunRequest(r2, r2.concurrency_key))
    assert not mgr.wait_until_active(r2, timeout=0.05)


def test_concurrent_admissions_leave_one_active_run():
    mgr = ConcurrencyGroupManager()
    runs = [make_run() for _ in range(16)]
    barrier = threading.Barrier(len(runs))
    decisions = {}

    def admit(run):
        barrier.wait()
        decisions[run.id] = mgr.admit(RunRequest(run, run.concurrency_key, cancel_in_progress=True))

    threads = [threading.Thread(target=admit, args=(r,)) for r in runs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    alive = [r for r in runs if not r.preempted]
    assert len(alive) == 1
    assert mgr.active_run(runs[0].concurrency_key) is alive[0]
    starts = [d for d in decisions.values() if d.kind is AdmissionKind.START]
    assert len(starts) == 1


def test_released_keys_are_dropped():
    mgr = ConcurrencyGroupManager()
    for i in range(200):
        run = make_run(f"Test-refs/pull/{i}/merge")
        assert mgr.admit(RunRequest(run, run.concurrency_key)).kind is AdmissionKind.START
        run.finalize()
        mgr.release(run)
    assert mgr.group_count() == 0


def test_key_is_kept_while_runs_are_queued():
    mgr = ConcurrencyGroupManager()
    r1, r2 = make_run(), make_run()
    key = r1.concurrency_key
    mgr.admit(RunRequest(r1, key))
    mgr.admit(RunRequest(r2, key))

    r1.finalize()
    assert mgr.release(r1) is r2
    assert mgr.group_count() == 1

    r2.finalize()
    mgr.release(r2)
    assert mgr.group_count() == 0

    # a dropped key is recreated on the next admission
    r3 = make_run()
    assert mgr.admit(RunRequest(r3, key)).kind is AdmissionKind.START
    assert mgr.active_run(key) is r3


def test_cancelling_a_queued_run_wakes_its_waiter():
    mgr = ConcurrencyGroupManager()
    r1, r2 = make_run(), make_run()
    key = r1.concurrency_key
    mgr.admit(RunRequest(r1, key))
    mgr.admit(RunRequest(r2, key))

    waited = []
    waiter = threading.Thread(target=lambda: waited.append(mgr.wait_until_active(r2, timeout=10)))
    waiter.start()
    timer = threading.Timer(0.1, r2.cancel, args=("user cancelled",))
    timer.start()
    waiter.join(timeout=5)
    timer.cancel()

    assert not waiter.is_alive()
    assert waited == [False]
    assert mgr.queued_runs(key) == []
