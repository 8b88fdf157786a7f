from __future__ import annotations

import threading
import time

import pytest

from mindshell.streaming import OutputChannel, StreamingCommandRunner


def test_chunks_reach_the_subscriber_while_the_record_uses_stdout() -> None:
    chunks = []

    result = StreamingCommandRunner().execute(
        "printf 'out\\n'; printf 'err\\n' >&2",
        on_output=chunks.append,
    )

    streamed = "".join(chunks)
    assert "out" in streamed
    assert "err" in streamed
    assert result.output == "out"
    assert result.error is None
    assert result.exit_code == 0


def test_failure_carries_stderr_and_exit_code() -> None:
    result = StreamingCommandRunner().execute("sh -c 'echo oops >&2; exit 2'")

    assert result.exit_code == 2
    assert result.error == "oops"


def test_channel_closes_after_the_last_chunk() -> None:
    runner = StreamingCommandRunner()
    channel = runner.subscribe()

    execution = runner.start("printf 'hello'")

    assert "".join(channel) == "hello"
    assert channel.closed
    result = execution.wait()
    assert execution.done
    assert result.output == "hello"


def test_only_one_subscriber_per_command() -> None:
    runner = StreamingCommandRunner()
    runner.subscribe()

    with pytest.raises(RuntimeError, match="already registered"):
        runner.subscribe()


def test_subscription_is_consumed_by_start() -> None:
    runner = StreamingCommandRunner()
    runner.subscribe()
    runner.start("printf one").wait()

    channel = runner.subscribe()
    execution = runner.start("printf two")

    assert "".join(channel) == "two"
    assert execution.wait().output == "two"


def test_builtin_completes_and_closes_channel_without_chunks() -> None:
    runner = StreamingCommandRunner()
    channel = runner.subscribe()

    execution = runner.start("echo from builtin")

    assert list(channel) == []
    assert execution.done
    assert execution.wait().output == "from builtin"


def test_empty_input_returns_empty_record() -> None:
    result = StreamingCommandRunner().execute("   ")

    assert (result.command, result.output, result.type) == ("", "", "")


def test_timeout_kills_the_process_group() -> None:
    result = StreamingCommandRunner(timeout=0.5).execute("sleep 5; echo late")

    assert result.exit_code == 124
    assert result.error == "Command timed out after 0.5 seconds"
    assert "late" not in result.output


def test_closed_channel_rejects_publish() -> None:
    channel = OutputChannel()
    channel.publish("a")
    channel.close()

    with pytest.raises(RuntimeError):
        channel.publish("b")
    assert list(channel) == ["a"]


def test_stalled_subscriber_does_not_block_the_timeout() -> None:
    runner = StreamingCommandRunner(timeout=1)
    runner.subscribe(maxsize=4)

    execution = runner.start("yes hello | head -c 5000000")

    result = execution.wait(timeout=10)
    assert result.exit_code == 124
    assert result.error == "Command timed out after 1 seconds"


def test_raising_callback_propagates_and_frees_the_runner() -> None:
    def broken(chunk):
        raise BrokenPipeError("terminal went away")

    runner = StreamingCommandRunner(timeout=5)

    with pytest.raises(BrokenPipeError):
        runner.execute("yes hello | head -c 2000000", on_output=broken)

    deadline = time.monotonic() + 10
    while _worker_threads() and time.monotonic() < deadline:
        time.sleep(0.05)
    assert _worker_threads() == []
    assert runner.execute("printf ok").output == "ok"


def test_abandoned_channel_drops_chunks() -> None:
    channel = OutputChannel(maxsize=1)
    assert channel.publish("a") is True

    channel.abandon()

    assert channel.publish("b") is False


def test_wait_with_timeout_raises_while_running() -> None:
    execution = StreamingCommandRunner().start("sleep 1; printf finished")

    with pytest.raises(TimeoutError, match="still running"):
        execution.wait(timeout=0.05)
    assert execution.wait(timeout=10).output == "finished"


def _worker_threads() -> list:
    return [t.name for t in threading.enumerate() if t.name.startswith("mindshell-") and t.is_alive()]
