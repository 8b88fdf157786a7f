"""In-process command handlers that bypass the subprocess path."""

from __future__ import annotations

import errno
import getpass
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .models import CommandOutput

BuiltinHandler = Callable[[List[str]], CommandOutput]

HELP_TEXT = """
help     Show this help message
clear    Clear the output history
exit     Exit the CLI application
pwd      Show current working directory
ls       List directory contents
cat      Display file contents
echo     Display text
date     Show current date and time
whoami   Show current user

Any other command will be executed in the system
shell. Use Ctrl+C to exit or 'exit' command.
""".strip()


@dataclass(frozen=True)
class BuiltinCommand:
    name: str
    description: str
    handler: BuiltinHandler


def _result(command: str, output: str, error: Optional[str] = None) -> CommandOutput:
    return CommandOutput(
        prompt=command,
        command=command,
        output=output,
        error=error,
        exit_code=1 if error else 0,
    )


def _os_error_message(exc: OSError, action: str, path: Path) -> str:
    """``ENOENT: No such file or directory, open 'missing.txt'``"""
    code = errno.errorcode.get(exc.errno or 0)
    if code and exc.strerror:
        return f"{code}: {exc.strerror}, {action} '{path}'"
    return str(exc)


def _help(args: List[str]) -> CommandOutput:
    return _result("help", HELP_TEXT)


def _clear(args: List[str]) -> CommandOutput:
    return _result("clear", "✨ Output history cleared")


def _pwd(args: List[str]) -> CommandOutput:
    try:
        return _result("pwd", os.getcwd())
    except OSError as exc:
        return _result("pwd", "", str(exc))


def _format_entry(entry: Path) -> str:
    try:
        stats = entry.stat()
    except OSError:
        return f"❓ {entry.name}"
    icon = "📁" if entry.is_dir() else "📄"
    modified = datetime.fromtimestamp(stats.st_mtime).strftime("%Y-%m-%d")
    return f"{icon} {entry.name:<20} {stats.st_size:>8} {modified}"


def _ls(args: List[str]) -> CommandOutput:
    command = f"ls {' '.join(args)}".strip()
    target = Path(args[0] if args else ".")
    try:
        entries = sorted(target.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        return _result(command, "", _os_error_message(exc, "scandir", target))
    formatted = "\n".join(_format_entry(entry) for entry in entries)
    return _result(command, formatted or "No items found")


def _cat(args: List[str]) -> CommandOutput:
    if not args:
        return _result("cat", "", "Usage: cat <filename>")
    command = f"cat {' '.join(args)}"
    target = Path(args[0])
    try:
        return _result(command, target.read_text(encoding="utf-8"))
    except OSError as exc:
        return _result(command, "", _os_error_message(exc, "open", target))
    except UnicodeDecodeError as exc:
        return _result(command, "", str(exc))


def _echo(args: List[str]) -> CommandOutput:
    return _result(f"echo {' '.join(args)}", " ".join(args))


def _date(args: List[str]) -> CommandOutput:
    return _result("date", datetime.now().astimezone().strftime("%a %b %d %Y %H:%M:%S %Z"))


def _whoami(args: List[str]) -> CommandOutput:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = os.getenv("USER") or os.getenv("USERNAME") or "unknown"
    return _result("whoami", user)


BUILTIN_COMMANDS: Dict[str, BuiltinCommand] = {
    cmd.name: cmd
    for cmd in (
        BuiltinCommand("help", "Show available commands", _help),
        BuiltinCommand("clear", "Clear the output history", _clear),
        BuiltinCommand("pwd", "Show current working directory", _pwd),
        BuiltinCommand("ls", "List directory contents", _ls),
        BuiltinCommand("cat", "Display file contents", _cat),
        BuiltinCommand("echo", "Display text", _echo),
        BuiltinCommand("date", "Show current date and time", _date),
        BuiltinCommand("whoami", "Show current user", _whoami),
    )
}
