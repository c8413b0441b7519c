import pytest

from devboot.dsl import build, call, job, retry, sh, wf
from devboot.model import JobState, RetryPolicy, Step


def noop(ctx):
    return None


def test_job_collects_steps_and_defaults():
    j = job(
        "devtools",
        sh("base", "apt-get install -y git"),
        call("check", noop),
        needs=["container"],
        env={"RETRIES": 3},
        cwd="/tmp",
        idle_timeout=60,
    )
    shell, fn = j.steps
    assert j.needs == ["container"]
    assert j.env == {"RETRIES": "3"}
    assert shell.cwd == "/tmp" and shell.idle_timeout == 60
    # callables have no cwd or output to watch
    assert fn.cwd is None and fn.idle_timeout is None
    assert not j.critical


def test_job_without_steps_is_rejected():
    with pytest.raises(ValueError):
        job("empty")


def test_job_names_must_be_marker_safe():
    with pytest.raises(ValueError):
        job("has space", sh("x", "true"))
    with pytest.raises(ValueError):
        job("../up", sh("x", "true"))


def test_step_needs_exactly_one_action():
    with pytest.raises(ValueError):
        Step(name="both", run="true", fn=noop)
    with pytest.raises(ValueError):
        Step(name="neither")


def test_step_display():
    assert sh("a", ["lxc", "list"]).display == "lxc list"
    assert call("b", noop).display == "noop"


def test_retry_policy_validation():
    assert retry(5, backoff=2, lock="apt") == RetryPolicy(attempts=5, backoff=2, lock="apt")
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)


def test_builder():
    j = (
        build("repo")
        .depends_on("github")
        .define_step("clone", "gh repo clone org/repo", retry=retry(3))
        .with_env(GH_ORG="org")
        .with_deadline(120)
        .critical()
        .build()
    )
    assert j.needs == ["github"]
    assert j.steps[0].retry.attempts == 3
    assert j.env == {"GH_ORG": "org"}
    assert j.deadline == 120
    assert j.critical


def test_builder_without_steps_is_rejected():
    with pytest.raises(ValueError):
        build("x").build()


def test_wf_returns_a_list():
    a = job("a", sh("x", "true"))
    assert wf(a) == [a]


def test_state_tokens():
    assert JobState.from_token("done\n") is JobState.DONE
    assert JobState.from_token("timeout") is JobState.TIMED_OUT
    assert JobState.from_token("error") is JobState.FAILED
    assert JobState.DONE.terminal and not JobState.RUNNING.terminal
