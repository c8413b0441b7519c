import sys
import time

from devboot.watchdog import TIMEOUT_EXIT_CODE, run_watched


def py(code: str) -> list:
    return [sys.executable, "-c", code]


def test_exit_code_and_output_pass_through():
    lines = []
    rc = run_watched(
        py("import sys; print('hello', flush=True); sys.exit(3)"),
        5,
        on_line=lines.append,
        check_interval=0.05,
    )
    assert rc == 3
    assert lines == ["hello"]


def test_stderr_is_merged_into_output():
    lines = []
    rc = run_watched(py("import sys; sys.stderr.write('oops\\n')"), 5, on_line=lines.append, check_interval=0.05)
    assert rc == 0
    assert lines == ["oops"]


def test_shell_string_runs_through_the_shell():
    lines = []
    rc = run_watched("echo one; echo two", 5, on_line=lines.append, check_interval=0.05)
    assert rc == 0
    assert lines == ["one", "two"]


def test_stalled_command_is_terminated():
    lines = []
    start = time.monotonic()
    rc = run_watched(
        py("import time; print('start', flush=True); time.sleep(30)"),
        0.5,
        on_line=lines.append,
        check_interval=0.1,
        grace=0.5,
    )
    assert rc == TIMEOUT_EXIT_CODE
    assert lines == ["start"]
    assert time.monotonic() - start < 10


def test_silent_command_is_treated_as_stalled():
    start = time.monotonic()
    rc = run_watched(py("import time; time.sleep(30)"), 0.3, on_line=lambda _: None, check_interval=0.1, grace=0.5)
    assert rc == TIMEOUT_EXIT_CODE
    assert time.monotonic() - start < 10


def test_chatty_command_outlives_its_idle_window():
    # runs ~1.5s, never silent for more than 0.1s
    code = "import time\nfor i in range(15):\n    print(i, flush=True)\n    time.sleep(0.1)\n"
    lines = []
    rc = run_watched(py(code), 0.5, on_line=lines.append, check_interval=0.05)
    assert rc == 0
    assert lines == [str(i) for i in range(15)]


def test_command_ignoring_sigterm_is_killed():
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    start = time.monotonic()
    rc = run_watched(py(code), 0.3, on_line=lambda _: None, check_interval=0.1, grace=0.3)
    assert rc == TIMEOUT_EXIT_CODE
    assert time.monotonic() - start < 10


def test_total_timeout_without_idle_check():
    code = "import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.05)\n"
    rc = run_watched(py(code), None, timeout=0.5, on_line=lambda _: None, check_interval=0.1, grace=0.5)
    assert rc == TIMEOUT_EXIT_CODE


def test_stall_warning_goes_to_console(capsys):
    run_watched(py("import time; time.sleep(30)"), 0.2, on_line=lambda _: None, check_interval=0.05, grace=0.5)
    assert "No output for 0.2s" in capsys.readouterr().err


def test_on_timeout_names_the_limit_that_fired():
    fired = []
    run_watched(py("import time; time.sleep(30)"), 0.2, timeout=60, on_line=lambda _: None,
                check_interval=0.05, grace=0.5, on_timeout=lambda *a: fired.append(a))
    code = "import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.05)\n"
    run_watched(py(code), 30, timeout=0.3, on_line=lambda _: None,
                check_interval=0.05, grace=0.5, on_timeout=lambda *a: fired.append(a))
    assert fired == [("idle", 0.2), ("total", 0.3)]


def test_on_timeout_not_called_for_normal_exit():
    fired = []
    assert run_watched(py("pass"), 5, on_line=lambda _: None, check_interval=0.05,
                       on_timeout=lambda *a: fired.append(a)) == 0
    assert fired == []
