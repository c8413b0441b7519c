import threading
import time

import pytest

from devboot.dsl import call, job, retry, sh
from devboot.model import JobState
from devboot.scheduler import JobHandle, RunResult, Scheduler, orchestrate
from devboot.store import FileStatusStore, MemoryStatusStore

FAST = {"poll_interval": 0.02, "report": False}


def ok(ctx):
    return None


def fail(ctx):
    return False


def test_retry_idle_timeout_and_dependency_ordering(store):
    """
    a: flaky callable that needs a retry
    b: shell step that goes silent and gets killed by the watchdog
    c: needs a, and checks a is Done before it starts
    """
    attempts = []
    seen_by_c = []

    def flaky(ctx):
        attempts.append(time.monotonic())
        if len(attempts) == 1:
            raise RuntimeError("mirror unreachable")

    def check_a(ctx):
        seen_by_c.append(ctx.store.read_state("a"))

    jobs = [
        job("a", call("install", flaky, retry=retry(3, backoff=0.01))),
        job("b", sh("hang", "sleep 30", idle_timeout=0.3)),
        job("c", call("configure", check_a), needs=["a"]),
    ]
    result = orchestrate(jobs, store, deadline=20, **FAST)

    assert result.completed and not result.deadline_exceeded
    assert result.states == {"a": JobState.DONE, "b": JobState.TIMED_OUT, "c": JobState.DONE}
    assert len(attempts) == 2
    assert seen_by_c == [JobState.DONE]
    assert result.exit_code == 0


def test_failure_propagates_down_the_chain(store, output):
    jobs = [
        job("a", call("x", fail)),
        job("b", call("x", ok), needs=["a"]),
        job("c", call("x", ok), needs=["b"]),
        job("d", call("x", ok)),
    ]
    result = orchestrate(jobs, store, deadline=10, **FAST)

    assert result.states == {
        "a": JobState.FAILED,
        "b": JobState.FAILED,
        "c": JobState.FAILED,
        "d": JobState.DONE,
    }
    assert result.reasons["b"] == "dependency 'a' did not complete"
    assert result.reasons["c"] == "dependency 'b' did not complete"
    assert "JOB STARTED: b" not in output()
    assert result.failed == ["a", "b", "c"]


def test_timed_out_dependency_also_blocks(store):
    jobs = [
        job("net", sh("hang", "sleep 30", idle_timeout=0.2)),
        job("repo", call("clone", ok), needs=["net"]),
    ]
    result = orchestrate(jobs, store, deadline=20, **FAST)
    assert result.states == {"net": JobState.TIMED_OUT, "repo": JobState.FAILED}


def test_global_deadline_returns_partial_result(store):
    release = threading.Event()

    def slow(ctx):
        release.wait(10)

    jobs = [
        job("fast", call("x", ok)),
        job("slow", call("x", slow)),
        job("after", call("x", ok), needs=["slow"]),
    ]
    try:
        start = time.monotonic()
        result = orchestrate(jobs, store, deadline=0.3, **FAST)
        elapsed = time.monotonic() - start
    finally:
        release.set()

    assert elapsed < 5
    assert result.deadline_exceeded and not result.completed
    assert result.states == {"fast": JobState.DONE, "slow": JobState.RUNNING, "after": JobState.PENDING}
    assert result.reasons["slow"] == "still running at deadline"
    assert result.reasons["after"] == "never started"
    # nothing critical, so a partial run is still a success
    assert result.exit_code == 0


def test_critical_job_failure_fails_the_run(store):
    jobs = [
        job("container", call("launch", fail), critical=True),
        job("network", call("x", ok), needs=["container"]),
    ]
    result = orchestrate(jobs, store, deadline=10, **FAST)
    assert result.critical_failed == ["container"]
    assert result.exit_code == 1


def test_non_critical_failure_keeps_exit_zero(store):
    jobs = [
        job("container", call("launch", ok), critical=True),
        job("devtools", call("x", fail), needs=["container"]),
    ]
    result = orchestrate(jobs, store, deadline=10, **FAST)
    assert result.states["devtools"] is JobState.FAILED
    assert result.exit_code == 0


def test_job_deadline_records_timeout_and_abandons_job(store):
    release = threading.Event()

    def stuck(ctx):
        release.wait(10)

    jobs = [
        job("devtools", call("x", stuck), deadline=0.2),
        job("repo", call("x", ok), needs=["devtools"]),
    ]
    try:
        result = orchestrate(jobs, store, deadline=10, **FAST)
    finally:
        release.set()

    assert result.completed
    assert result.states == {"devtools": JobState.TIMED_OUT, "repo": JobState.FAILED}
    assert result.reasons["devtools"] == "exceeded job deadline of 0.2s"


def test_abandoned_job_cannot_overwrite_its_timeout(store):
    release = threading.Event()

    def stuck(ctx):
        release.wait(10)

    scheduler = Scheduler([job("a", call("x", stuck), deadline=0.1)], store, deadline=5, poll_interval=0.02)
    result = scheduler.run()
    assert result.states["a"] is JobState.TIMED_OUT

    release.set()
    scheduler.handle("a").join(5)
    assert scheduler.handle("a").state is JobState.TIMED_OUT
    assert store.read_state("a") is JobState.TIMED_OUT


def test_scheduler_records_on_behalf_of_silent_jobs(store):
    def execute(j):
        if j.name == "boom":
            raise RuntimeError("exploded")
        return JobState.DONE

    jobs = [job("quiet", call("x", ok)), job("boom", call("x", ok))]
    result = Scheduler(jobs, store, deadline=5, poll_interval=0.02, execute=execute).run()

    assert result.states == {"quiet": JobState.DONE, "boom": JobState.FAILED}
    assert result.reasons["quiet"] == "finished without a status marker"
    assert result.reasons["boom"] == "crashed: exploded"


def test_shell_job_can_write_its_own_marker(tmp_path):
    status = FileStatusStore(tmp_path / "status")
    script = 'printf "done\\n" > "$DEVBOOT_STORE/$DEVBOOT_JOB.status"; exit 1'
    jobs = [job("github", sh("auth", script))]
    status.root.mkdir()

    result = orchestrate(jobs, status, deadline=10, **FAST)

    # the marker the job wrote first wins over the runner's own "failed"
    assert result.states == {"github": JobState.DONE}
    assert (tmp_path / "status" / "github.status").read_text() == "done\n"


def test_resume_skips_jobs_already_recorded(store):
    ran = []

    def track(ctx):
        ran.append(ctx.job)

    jobs = [
        job("container", call("x", track)),
        job("network", call("x", track), needs=["container"]),
    ]
    store.record_terminal("container", JobState.DONE)

    result = orchestrate(jobs, store, deadline=10, resume=True, **FAST)
    assert ran == ["network"]
    assert result.states == {"container": JobState.DONE, "network": JobState.DONE}

    ran.clear()
    orchestrate(jobs, store, deadline=10, **FAST)
    assert ran == ["container", "network"]


def test_shared_lock_serializes_jobs(store):
    active, peak = [0], [0]
    guard = threading.Lock()

    def install(ctx):
        with guard:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.1)
        with guard:
            active[0] -= 1

    apt = retry(1, lock="apt", lock_wait=5)
    jobs = [job(f"pkg{i}", call("install", install, retry=apt)) for i in range(3)]
    result = orchestrate(jobs, store, deadline=10, **FAST)

    assert all(s is JobState.DONE for s in result.states.values())
    assert peak[0] == 1


def test_job_env_exposes_name_and_store(tmp_path):
    status = FileStatusStore(tmp_path)
    seen = {}

    def capture(ctx):
        seen.update(ctx.env)

    orchestrate([job("repo", call("x", capture), env={"GH_ORG": "acme"})], status, deadline=5, **FAST)
    assert seen["DEVBOOT_JOB"] == "repo"
    assert seen["DEVBOOT_STORE"] == str(tmp_path)
    assert seen["GH_ORG"] == "acme"


def test_reporter_runs_alongside(store, output):
    jobs = [job("a", call("x", lambda ctx: time.sleep(0.3)))]
    orchestrate(jobs, store, deadline=5, poll_interval=0.02, report_interval=0.05)
    assert "STATUS UPDATE (1):" in output()


def test_cycle_is_rejected_before_anything_runs(store):
    jobs = [job("a", call("x", ok), needs=["b"]), job("b", call("x", ok), needs=["a"])]
    with pytest.raises(ValueError):
        orchestrate(jobs, store, deadline=5, **FAST)


def test_run_result_exit_code():
    result = RunResult(
        states={"c": JobState.RUNNING, "d": JobState.DONE},
        critical=frozenset({"c"}),
    )
    assert result.critical_failed == ["c"]
    assert result.exit_code == 1


def test_handle_outcome_for_crashed_job():
    def boom():
        raise RuntimeError("x")

    h = JobHandle(job("a", call("x", ok)), boom, 0.0)
    h.start()
    h.join(5)
    assert h.done()
    assert isinstance(h.error, RuntimeError)
    assert h.outcome is JobState.FAILED


def test_garbage_marker_fails_only_that_job(tmp_path):
    status = FileStatusStore(tmp_path / "status")
    status.root.mkdir()
    script = 'echo ok > "$DEVBOOT_STORE/$DEVBOOT_JOB.status"'
    jobs = [
        job("github", sh("auth", script)),
        job("repo", call("clone", ok), needs=["github"]),
        job("other", call("x", ok)),
    ]

    result = orchestrate(jobs, status, deadline=10, **FAST)

    assert result.completed
    assert result.states == {"github": JobState.FAILED, "repo": JobState.FAILED, "other": JobState.DONE}
    assert result.reasons["github"].startswith("unreadable status marker")
    assert result.reasons["repo"] == "dependency 'github' did not complete"
