"""Buffered command execution: builtins in-process, everything else via the shell."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from typing import Dict, List, Optional

from .builtins import BUILTIN_COMMANDS, BuiltinCommand
from .models import CommandOutput

DEFAULT_TIMEOUT = 30.0
MAX_BUFFER = 1024 * 1024
TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127

logger = logging.getLogger(__name__)


def decode_output(payload: Optional[bytes]) -> str:
    if not payload:
        return ""
    return payload.decode("utf-8", errors="replace")


def empty_result(raw_input: str) -> CommandOutput:
    return CommandOutput(prompt=raw_input, command="", output="", type="")


def spawn_shell(command_line: str, cwd: Optional[str] = None, **kwargs) -> "subprocess.Popen[bytes]":
    """Start ``command_line`` under the shell as the leader of its own process group."""
    return subprocess.Popen(
        command_line,
        shell=True,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=os.name == "posix",
        **kwargs,
    )


def kill_process_group(process: "subprocess.Popen[bytes]") -> None:
    """SIGKILL the shell and everything it started."""
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        process.kill()


class BuiltinDispatcher:
    """Exact first-token lookup into a static builtin registry."""

    def __init__(self, builtins: Optional[Dict[str, BuiltinCommand]] = None) -> None:
        self._builtins = dict(BUILTIN_COMMANDS if builtins is None else builtins)

    def builtin_commands(self) -> List[BuiltinCommand]:
        return list(self._builtins.values())

    def lookup(self, command_line: str) -> Optional[BuiltinCommand]:
        tokens = command_line.split()
        return self._builtins.get(tokens[0]) if tokens else None

    def run_builtin(self, builtin: BuiltinCommand, raw_input: str, command_line: str) -> CommandOutput:
        args = command_line.split()[1:]
        logger.info("builtin: %s %s", builtin.name, args)
        try:
            return builtin.handler(args)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Builtin '%s' raised: %s", builtin.name, exc)
            return CommandOutput(
                prompt=raw_input,
                command=command_line,
                output="",
                error=str(exc) or "Unknown error",
                exit_code=1,
            )


class CommandRunner(BuiltinDispatcher):
    """Runs one line of input and always returns a ``CommandOutput``.

    Failures (non-zero exit, timeout, spawn errors, oversized output,
    builtin exceptions) are reported through ``error``; nothing is raised.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_buffer: int = MAX_BUFFER,
        cwd: Optional[str] = None,
        builtins: Optional[Dict[str, BuiltinCommand]] = None,
    ) -> None:
        super().__init__(builtins)
        self.timeout = timeout
        self.max_buffer = max_buffer
        self.cwd = cwd

    def execute(self, raw_input: str) -> CommandOutput:
        command_line = raw_input.strip()
        if not command_line:
            return empty_result(raw_input)

        builtin = self.lookup(command_line)
        if builtin:
            return self.run_builtin(builtin, raw_input, command_line)

        return self._run_subprocess(raw_input, command_line)

    def _run_subprocess(self, raw_input: str, command_line: str) -> CommandOutput:
        logger.info("command_request: %s (timeout=%ss)", command_line, self.timeout)
        started = time.monotonic()
        try:
            process = spawn_shell(command_line, self.cwd)
        except OSError as exc:
            logger.error("Failed to spawn '%s': %s", command_line, exc)
            return CommandOutput(
                prompt=raw_input,
                command=command_line,
                output="",
                error=str(exc) or "Command execution failed",
                exit_code=SPAWN_FAILURE_EXIT_CODE,
            )

        with process:
            try:
                stdout, stderr = process.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Command timed out after %ss: %s", self.timeout, command_line)
                kill_process_group(process)
                stdout, _ = process.communicate()
                return CommandOutput(
                    prompt=raw_input,
                    command=command_line,
                    output=decode_output(stdout)[: self.max_buffer].strip(),
                    error=f"Command timed out after {self.timeout:g} seconds",
                    exit_code=TIMEOUT_EXIT_CODE,
                )

        result = self._build_result(raw_input, command_line, process.returncode, stdout, stderr)
        logger.info(
            "command_result: exit=%s duration=%.3fs stdout=%s error=%s",
            result.exit_code,
            time.monotonic() - started,
            len(result.output),
            bool(result.error),
        )
        return result

    def _build_result(
        self,
        raw_input: str,
        command_line: str,
        exit_code: int,
        stdout: Optional[bytes],
        stderr: Optional[bytes],
    ) -> CommandOutput:
        stdout = stdout or b""
        stderr = stderr or b""
        error: Optional[str] = None

        overflow = [
            name
            for name, data in (("stdout", stdout), ("stderr", stderr))
            if len(data) > self.max_buffer
        ]
        if overflow:
            logger.warning("Output of '%s' exceeded %s bytes", command_line, self.max_buffer)
            error = f"{overflow[0]} maxBuffer length exceeded"
            exit_code = exit_code or 1
        elif exit_code != 0:
            error = decode_output(stderr).strip() or f"Command failed with exit code {exit_code}"

        return CommandOutput(
            prompt=raw_input,
            command=command_line,
            output=decode_output(stdout[: self.max_buffer]).strip(),
            error=error,
            exit_code=exit_code,
        )
