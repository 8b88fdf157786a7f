from __future__ import annotations

import subprocess
import time

import psutil

from mindshell.builtins import BuiltinCommand
from mindshell.executor import CommandRunner
from mindshell.models import CommandOutput


def test_successful_command_returns_trimmed_stdout() -> None:
    result = CommandRunner().execute("printf '  hello world \\n\\n'")

    assert result.error is None
    assert result.exit_code == 0
    assert result.output == "hello world"
    assert result.command == "printf '  hello world \\n\\n'"


def test_failing_command_reports_stderr_and_real_exit_code() -> None:
    result = CommandRunner().execute("sh -c 'echo boom >&2; exit 3'")

    assert result.error == "boom"
    assert result.exit_code == 3
    assert not result.success


def test_failure_without_stderr_still_has_error() -> None:
    result = CommandRunner().execute("sh -c 'exit 4'")

    assert result.exit_code == 4
    assert result.error == "Command failed with exit code 4"


def test_stderr_on_success_is_not_an_error() -> None:
    result = CommandRunner().execute("sh -c 'echo warn >&2; printf ok'")

    assert result.exit_code == 0
    assert result.error is None
    assert result.output == "ok"


def test_empty_input_spawns_nothing(monkeypatch) -> None:
    def fail(*args, **kwargs):
        raise AssertionError("subprocess must not run for empty input")

    monkeypatch.setattr(subprocess, "Popen", fail)
    runner = CommandRunner()

    for raw in ("", "   "):
        result = runner.execute(raw)
        assert (result.command, result.output, result.type) == ("", "", "")
        assert result.error is None


def test_cat_missing_file_is_enoent(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CommandRunner().execute("cat missing.txt")

    assert result.error == "ENOENT: No such file or directory, open 'missing.txt'"
    assert result.exit_code == 1
    assert result.output == ""


def test_builtins_run_in_process(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "notes.txt").write_text("remember the milk", encoding="utf-8")
    runner = CommandRunner()

    assert runner.execute("cat notes.txt").output == "remember the milk"
    assert runner.execute("echo  hi   there").output == "hi there"
    assert "notes.txt" in runner.execute("ls").output
    assert runner.execute("cat").error == "Usage: cat <filename>"
    assert {cmd.name for cmd in runner.builtin_commands()} >= {"help", "pwd", "ls", "cat", "echo", "whoami"}


def test_builtin_exception_becomes_failure_record() -> None:
    def explode(args):
        raise ValueError("kaboom")

    runner = CommandRunner(builtins={"boom": BuiltinCommand("boom", "always fails", explode)})

    result = runner.execute("boom now")

    assert result.error == "kaboom"
    assert result.exit_code == 1
    assert result.command == "boom now"


def test_builtin_lookup_is_exact_first_token() -> None:
    calls = []

    def greet(args):
        calls.append(args)
        return CommandOutput(prompt="hi", command="hi", output="hello", exit_code=0)

    runner = CommandRunner(builtins={"hi": BuiltinCommand("hi", "greets", greet)})

    assert runner.execute("hi there").output == "hello"
    assert calls == [["there"]]

    result = runner.execute("hithere")
    assert calls == [["there"]]
    assert result.exit_code == 127
    assert result.error


def test_timeout_is_reported_as_data() -> None:
    result = CommandRunner(timeout=0.5).execute("sleep 5")

    assert result.exit_code == 124
    assert result.error == "Command timed out after 0.5 seconds"


def test_output_over_buffer_cap_fails() -> None:
    result = CommandRunner(max_buffer=10).execute("printf '%0100d' 0")

    assert result.error == "stdout maxBuffer length exceeded"
    assert result.exit_code == 1
    assert len(result.output) <= 10


def test_timeout_leaves_no_child_running() -> None:
    result = CommandRunner(timeout=0.5).execute("sleep 7.37; echo done")

    assert result.exit_code == 124
    assert "done" not in result.output

    deadline = time.monotonic() + 2
    survivors = _processes_running("sleep 7.37")
    while survivors and time.monotonic() < deadline:
        time.sleep(0.05)
        survivors = _processes_running("sleep 7.37")
    assert survivors == []


def test_builtin_lookup_splits_on_any_whitespace(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CommandRunner().execute("cat\tmissing.txt")

    assert result.error == "ENOENT: No such file or directory, open 'missing.txt'"
    assert result.exit_code == 1


def _processes_running(needle: str) -> list:
    found = []
    for proc in psutil.process_iter(["cmdline", "status"]):
        if proc.info["status"] == psutil.STATUS_ZOMBIE:
            continue
        if needle in " ".join(proc.info["cmdline"] or []):
            found.append(proc.pid)
    return found
