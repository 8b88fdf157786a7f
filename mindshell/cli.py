"""Interactive loop: shell mode runs commands, AI mode asks the assistant first."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Callable, Optional

try:
    import readline  # noqa: F401  # Unix-like systems
except ImportError:  # pragma: no cover
    readline = None

from . import __version__
from .assistant import Assistant, load_active_config
from .config import MindShellConfig, find_metadata_dir, is_valid_config, save_config, setup_logging
from .context import ContextCache
from .diagnostics import DiagnosticPhase, DiagnosticRunner
from .errors import LLMRequestError, ProviderError
from .executor import DEFAULT_TIMEOUT, CommandRunner
from .history import HistoryStore
from .models import CmdOutcome, CommandOutput, InteractionResponse, RetryChain, StepResult
from .progress import DownloadProgress, DownloadProgressEvent
from .retry_chain import RetryChainManager
from .streaming import DEFAULT_STREAM_TIMEOUT, StreamingCommandRunner

logger = logging.getLogger(__name__)

CLI_HELP = """
🧠 mindshell commands:
  mode               Toggle between shell mode and AI mode
  status             Show the compact project/system status line
  refresh-context    Rebuild the cached project context
  cd <path>          Change directory
  exit | quit        Leave mindshell

In shell mode every line runs as a command; failures are analyzed by the AI.
In AI mode describe what you want and confirm suggested commands.
""".strip()


class LiveRunner:
    """Streams output to the terminal while the command runs."""

    def __init__(self, runner: StreamingCommandRunner, write: Optional[Callable[[str], None]] = None) -> None:
        self.runner = runner
        self._write = write or _write_stdout
        self.streamed = False

    def _on_output(self, chunk: str) -> None:
        self.streamed = True
        self._write(chunk)

    def execute(self, raw_input: str) -> CommandOutput:
        self.streamed = False
        return self.runner.execute(raw_input, on_output=self._on_output)


def _write_stdout(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


class MindShellCLI:
    def __init__(self, config: Optional[MindShellConfig] = None) -> None:
        self.config = config
        self.history = HistoryStore()
        progress = DownloadProgress()
        progress.subscribe(self._show_progress)
        self.assistant = Assistant(progress=progress, on_context=self._show_context)

        command_timeout = config.command_timeout if config else DEFAULT_TIMEOUT
        stream_timeout = config.stream_timeout if config else DEFAULT_STREAM_TIMEOUT
        self.buffered_runner = CommandRunner(timeout=command_timeout)
        self.live_runner = LiveRunner(StreamingCommandRunner(timeout=stream_timeout))
        self.chain_manager = RetryChainManager(
            self.live_runner,
            self.assistant,
            self.history,
            max_attempts=config.max_retry_attempts if config else None,
        )
        self.shell_mode = config.is_shell_mode_active if config else True

    @property
    def shell_prompt(self) -> str:
        marker = "$" if self.shell_mode else "🤖"
        return f"{Path.cwd().name or '/'} {marker} "

    # ------------------------------------------------------------------
    # Terminal helpers
    # ------------------------------------------------------------------
    def _show_context(self, compact: str, timing: dict) -> None:
        print(f"🧠 Context: {compact}")
        print(f"⚡ Loaded in {timing['total']}ms (cached: {timing['cached']})")

    def _show_progress(self, event: DownloadProgressEvent) -> None:
        if event.error:
            print(f"❌ {event.progress}")
        elif event.is_complete:
            print(f"✅ {event.model}: {event.progress}")
        else:
            print(f"⏳ {event.model}: {event.progress} ({event.percentage:g}%)")

    def _confirm(self, message: str) -> bool:
        return input(f"{message} [y/N]: ").strip().lower() in {"y", "yes"}

    def _setup_history(self) -> None:
        if not readline:
            return
        for entry in self.history.load_command_history():
            readline.add_history(entry)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def run(self) -> int:
        print(f"🚀 mindshell {__version__}")
        print("💡 Type 'help' for builtins, '?' for mindshell commands, 'exit' to quit")
        if not self.config or not is_valid_config(self.config):
            print("⚠️  No valid model configured; AI features are disabled until ~/.mindshell/config.json is set up.")
        print(f"📍 {ContextCache(Path.cwd()).quick_status()}")
        print(f"🔧 Mode: {'shell' if self.shell_mode else 'AI'}")
        self._setup_history()

        while True:
            try:
                user_input = input(f"\n{self.shell_prompt}").strip()
                if not user_input:
                    continue
                self.history.remember_command(user_input)

                if user_input.lower() in ("exit", "quit"):
                    print("👋 Goodbye!")
                    return 0
                self.handle_input(user_input)

            except KeyboardInterrupt:
                print("\n👋 Goodbye!")
                return 0
            except EOFError:
                print()
                return 0
            except (ProviderError, LLMRequestError) as exc:
                print(f"⚠️  {exc}")
            except Exception as exc:  # noqa: BLE001
                print(f"💥 Error: {exc}")
                logger.exception("Unexpected error")

    def handle_input(self, user_input: str) -> None:
        lowered = user_input.lower()
        if lowered == "mode":
            self.toggle_mode()
            return
        if lowered == "status":
            print(ContextCache(Path.cwd()).quick_status())
            return
        if lowered == "refresh-context":
            ContextCache(Path.cwd()).refresh()
            print("✅ Context cache refreshed")
            return
        if lowered == "?":
            print(CLI_HELP)
            return
        if lowered == "cd" or lowered.startswith("cd "):
            self._change_directory(user_input[2:].strip())
            return

        if self.shell_mode:
            self._run_shell_line(user_input)
        else:
            self._ask(user_input)

    def toggle_mode(self) -> None:
        self.shell_mode = not self.shell_mode
        if self.config:
            self.config.is_shell_mode_active = self.shell_mode
            try:
                metadata_dir = find_metadata_dir()
                save_config(self.config, metadata_dir.parent if metadata_dir else None)
            except OSError as exc:
                logger.warning("Failed to persist mode: %s", exc)
        print(f"🔧 Mode: {'shell' if self.shell_mode else 'AI'}")

    def _change_directory(self, target: str) -> None:
        path = Path(os.path.expanduser(target or "~"))
        try:
            os.chdir(path)
        except OSError as exc:
            print(f"❌ cd: {exc.strerror or exc}: {target}")
            return
        print(f"📁 {Path.cwd()}")

    # ------------------------------------------------------------------
    # Shell mode
    # ------------------------------------------------------------------
    def _run_shell_line(self, line: str) -> None:
        outcome = self.chain_manager.handle_command(line, line)
        if self._report(outcome):
            return
        print("🤖 Command failed, asking the AI for help...")
        self._follow(line, outcome.next_response, outcome.chain)

    def _report(self, outcome: CmdOutcome) -> bool:
        """Print what the executed attempt produced; True when the chain is done."""
        # On failure the AI suggestion is appended after the executed attempt.
        last = outcome.chain.last if outcome.done else outcome.chain.attempts[-2]
        if last.output and not self.live_runner.streamed:
            print(last.output)
        if last.error:
            print(f"❌ {last.error}")
        if outcome.done and outcome.next_response.type != "command":
            print(f"🛑 {outcome.next_response.content}")
        return outcome.done

    # ------------------------------------------------------------------
    # AI mode
    # ------------------------------------------------------------------
    def _ask(self, prompt: str) -> None:
        response = self.assistant.get_ai_response(prompt)
        self.history.append(
            CommandOutput(
                prompt=prompt,
                command=response.command or "",
                output=response.content,
                type=response.type,
            )
        )
        self._follow(prompt, response)

    def _follow(self, prompt: str, response: InteractionResponse, chain: Optional[RetryChain] = None) -> None:
        while True:
            if response.type == "command" and response.command:
                self._print_suggestion(response)
                if not self._confirm("▶️  Run this command?"):
                    return
                outcome = self.chain_manager.handle_command(prompt, response.command, chain)
                chain = outcome.chain
                if self._report(outcome):
                    print("✅ Done" if outcome.next_response.type == "command" else "❌ Failed")
                    return
                response = outcome.next_response
                continue

            if response.type == "diagnostic" and response.steps:
                verdict = self._run_diagnostic(prompt, response, chain)
                if verdict is None:
                    return
                response = verdict
                continue

            self._print_text(response)
            return

    def _print_suggestion(self, response: InteractionResponse) -> None:
        if response.content and response.content != response.command:
            print(f"💬 {response.content}")
        print(f"💡 {response.command}")
        if response.explanation:
            print(f"ℹ️  {response.explanation}")

    def _print_text(self, response: InteractionResponse) -> None:
        icon = {"explanation": "📘", "answer": "✅", "conversation": "💬"}.get(response.type, "🤖")
        print(f"{icon} {response.content}")
        if response.command:
            print(f"💡 {response.command}")

    def _run_diagnostic(
        self,
        prompt: str,
        response: InteractionResponse,
        chain: Optional[RetryChain],
    ) -> Optional[InteractionResponse]:
        session = DiagnosticRunner(
            response,
            prompt,
            chain=chain,
            runner=self.buffered_runner,
            assistant=self.assistant,
            history=self.history,
            on_step=self._show_step,
            on_phase=self._show_phase,
        )
        print(f"🩺 {session.explanation}")
        for index, step in enumerate(session.steps, start=1):
            print(f"  {index}. {step.label}\n     $ {step.command}")
        if not self._confirm(f"Run these {len(session.steps)} diagnostic steps?"):
            session.reject()
            return None

        return session.accept()

    def _show_step(self, result: StepResult) -> None:
        marker = "✅" if result.success else "❌"
        print(f"{marker} {result.step.label}\n{result.output if result.success else result.error}")

    def _show_phase(self, phase: DiagnosticPhase) -> None:
        if phase is DiagnosticPhase.RUNNING:
            print("⏳ Executing diagnostic steps...")
        elif phase is DiagnosticPhase.ANALYZING:
            print("🔍 Analyzing diagnostic results...")


def main() -> int:
    setup_logging()
    config = load_active_config()
    logger.info("mindshell %s starting (model=%s)", __version__, config.model if config else None)
    return MindShellCLI(config).run()


if __name__ == "__main__":
    sys.exit(main())
