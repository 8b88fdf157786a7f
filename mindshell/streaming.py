"""Command execution with live output delivered to a single subscriber."""

from __future__ import annotations

import codecs
import logging
import queue
import subprocess
import threading
from typing import IO, Callable, Dict, Iterator, List, Optional

from .builtins import BuiltinCommand
from .executor import (
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    BuiltinDispatcher,
    decode_output,
    empty_result,
    kill_process_group,
    spawn_shell,
)
from .models import CommandOutput

DEFAULT_STREAM_TIMEOUT = 300.0
CHUNK_SIZE = 4096
CHANNEL_SIZE = 256
POLL_INTERVAL = 0.1
# How long pumps may keep feeding a slow reader after the process has exited.
DRAIN_GRACE = 5.0

logger = logging.getLogger(__name__)

_CLOSED = object()


class OutputChannel:
    """Bounded queue of raw output chunks terminated by an explicit close.

    Once abandoned, publishing silently drops chunks instead of waiting for
    a reader that is no longer there.
    """

    def __init__(self, maxsize: int = CHANNEL_SIZE) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._abandoned = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def publish(self, chunk: str) -> bool:
        """Queue ``chunk``; False when the channel was abandoned meanwhile."""
        if self.closed:
            raise RuntimeError("cannot publish to a closed output channel")
        while not self.abandoned:
            try:
                self._queue.put(chunk, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def abandon(self) -> None:
        self._abandoned.set()

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # The reader notices the close flag once the queue runs dry.
            pass

    def __iter__(self) -> Iterator[str]:
        while True:
            try:
                item = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self.closed:
                    yield from self._drain()
                    return
                continue
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    def _drain(self) -> Iterator[str]:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not _CLOSED:
                yield item  # type: ignore[misc]


class StreamingExecution:
    """Handle for one in-flight command; ``wait()`` returns the final record."""

    def __init__(self, channel: Optional[OutputChannel]) -> None:
        self.channel = channel
        self._done = threading.Event()
        self._result: Optional[CommandOutput] = None

    def _finish(self, result: CommandOutput) -> None:
        self._result = result
        if self.channel is not None:
            self.channel.close()
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def chunks(self) -> Iterator[str]:
        if self.channel is None:
            return iter(())
        return iter(self.channel)

    def wait(self, timeout: Optional[float] = None) -> CommandOutput:
        self._done.wait(timeout)
        if self._result is None:
            raise TimeoutError(f"command still running after {timeout}s")
        return self._result


class StreamingCommandRunner(BuiltinDispatcher):
    """Same builtin rule as ``CommandRunner``; external commands stream.

    Register a subscriber with ``subscribe()`` before ``start()``. Stdout and
    stderr chunks are published as they arrive, merged and unnormalized.
    The returned record is built from the full captured streams, not from
    what was published.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = DEFAULT_STREAM_TIMEOUT,
        cwd: Optional[str] = None,
        builtins: Optional[Dict[str, BuiltinCommand]] = None,
    ) -> None:
        super().__init__(builtins)
        self.timeout = timeout
        self.cwd = cwd
        self._pending: Optional[OutputChannel] = None
        self._lock = threading.Lock()

    def subscribe(self, maxsize: int = CHANNEL_SIZE) -> OutputChannel:
        with self._lock:
            if self._pending is not None:
                raise RuntimeError("an output subscriber is already registered for the next command")
            self._pending = OutputChannel(maxsize)
            return self._pending

    def _take_channel(self) -> Optional[OutputChannel]:
        with self._lock:
            channel, self._pending = self._pending, None
            return channel

    def start(self, raw_input: str) -> StreamingExecution:
        execution = StreamingExecution(self._take_channel())
        command_line = raw_input.strip()
        if not command_line:
            execution._finish(empty_result(raw_input))
            return execution

        builtin = self.lookup(command_line)
        if builtin:
            execution._finish(self.run_builtin(builtin, raw_input, command_line))
            return execution

        logger.info("stream_request: %s (timeout=%ss)", command_line, self.timeout)
        try:
            process = spawn_shell(command_line, self.cwd, bufsize=0)
        except OSError as exc:
            logger.error("Failed to spawn '%s': %s", command_line, exc)
            execution._finish(
                CommandOutput(
                    prompt=raw_input,
                    command=command_line,
                    output="",
                    error=str(exc) or "Command execution failed",
                    exit_code=SPAWN_FAILURE_EXIT_CODE,
                )
            )
            return execution

        stdout_data: List[bytes] = []
        stderr_data: List[bytes] = []
        pumps = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, stdout_data, execution.channel),
                name="mindshell-pump-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, stderr_data, execution.channel),
                name="mindshell-pump-stderr",
                daemon=True,
            ),
        ]
        for pump in pumps:
            pump.start()

        threading.Thread(
            target=self._supervise,
            args=(execution, process, pumps, raw_input, command_line, stdout_data, stderr_data),
            name="mindshell-supervisor",
            daemon=True,
        ).start()
        return execution

    def execute(
        self,
        raw_input: str,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> CommandOutput:
        """Run to completion, feeding each chunk to ``on_output`` as it arrives.

        If ``on_output`` raises, the channel is abandoned so the command can
        still finish in the background, and the exception propagates.
        """
        channel = self.subscribe() if on_output is not None else None
        execution = self.start(raw_input)
        if channel is not None and on_output is not None:
            try:
                for chunk in channel:
                    on_output(chunk)
            finally:
                channel.abandon()
        return execution.wait()

    def _supervise(
        self,
        execution: StreamingExecution,
        process: "subprocess.Popen[bytes]",
        pumps: List[threading.Thread],
        raw_input: str,
        command_line: str,
        stdout_data: List[bytes],
        stderr_data: List[bytes],
    ) -> None:
        channel = execution.channel
        timed_out = False
        try:
            process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("Streaming command timed out after %ss: %s", self.timeout, command_line)
            if channel is not None:
                channel.abandon()
            kill_process_group(process)
            process.wait()

        # A reader that stops consuming must not keep the pumps blocked.
        for pump in pumps:
            pump.join(DRAIN_GRACE)
        if channel is not None and any(pump.is_alive() for pump in pumps):
            logger.warning("Output subscriber stalled; dropping remaining chunks of: %s", command_line)
            channel.abandon()
        for pump in pumps:
            pump.join()

        stdout = decode_output(b"".join(stdout_data)).strip()
        stderr = decode_output(b"".join(stderr_data)).strip()
        exit_code = process.returncode
        error: Optional[str] = None
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            error = f"Command timed out after {self.timeout:g} seconds"
        elif exit_code != 0:
            error = stderr or f"Command failed with exit code {exit_code}"

        logger.info("stream_result: exit=%s stdout=%s error=%s", exit_code, len(stdout), bool(error))
        execution._finish(
            CommandOutput(
                prompt=raw_input,
                command=command_line,
                output=stdout,
                error=error,
                exit_code=exit_code,
            )
        )


def _pump(stream: Optional[IO[bytes]], sink: List[bytes], channel: Optional[OutputChannel]) -> None:
    """Read ``stream`` to EOF; publishing stops once the channel is abandoned."""
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            data = stream.read(CHUNK_SIZE)
            if not data:
                break
            sink.append(data)
            text = decoder.decode(data)
            if text and channel is not None and not channel.abandoned:
                channel.publish(text)
        tail = decoder.decode(b"", final=True)
        if tail and channel is not None and not channel.abandoned:
            channel.publish(tail)
    finally:
        stream.close()
