"""Guided diagnostic sessions: confirm, run each step, then ask for a verdict."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List, Optional

from .assistant import Assistant
from .executor import CommandRunner
from .history import HistoryStore
from .models import CommandOutput, DiagnosticStep, InteractionResponse, RetryChain, StepResult
from .prompts import build_diagnostic_prompt
from .retry_chain import AIGateway, HistoryLog, Runner

logger = logging.getLogger(__name__)


class DiagnosticPhase(str, Enum):
    CONFIRM = "confirm"
    RUNNING = "running"
    ANALYZING = "analyzing"
    COMPLETED = "completed"


class DiagnosticRunner:
    """Runs the steps of a ``diagnostic`` reply one at a time, in order.

    A failing step is recorded and the session moves on; once every step has
    a result the summary goes to the provider automatically. The verdict is
    passed to ``on_next``, and ``on_done`` fires when the session ends.
    """

    def __init__(
        self,
        response: InteractionResponse,
        prompt: str = "",
        *,
        chain: Optional[RetryChain] = None,
        runner: Optional[Runner] = None,
        assistant: Optional[AIGateway] = None,
        history: Optional[HistoryLog] = None,
        on_done: Optional[Callable[[], None]] = None,
        on_next: Optional[Callable[[InteractionResponse], None]] = None,
        on_step: Optional[Callable[[StepResult], None]] = None,
        on_phase: Optional[Callable[[DiagnosticPhase], None]] = None,
    ) -> None:
        self.response = response
        self.prompt = prompt
        self.chain = chain
        self.steps: List[DiagnosticStep] = list(response.steps or [])
        self.runner = runner or CommandRunner()
        self.assistant = assistant or Assistant()
        self.history = history or HistoryStore()
        self.on_done = on_done
        self.on_next = on_next
        self.on_step = on_step
        self.on_phase = on_phase

        self.phase = DiagnosticPhase.CONFIRM
        self.current_index = 0
        self.step_results: List[StepResult] = []
        self.verdict: Optional[InteractionResponse] = None
        self.rejected = False

    @property
    def explanation(self) -> str:
        return self.response.content or "These diagnostic steps may help identify the issue."

    def _require(self, phase: DiagnosticPhase) -> None:
        if self.phase is not phase:
            raise RuntimeError(f"diagnostic session is {self.phase.value}, expected {phase.value}")

    def _set_phase(self, phase: DiagnosticPhase) -> None:
        logger.info("diagnostic: %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        if self.on_phase:
            self.on_phase(phase)

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Leave CONFIRM; steps are then driven with ``run_next_step``."""
        self._require(DiagnosticPhase.CONFIRM)
        self._set_phase(DiagnosticPhase.RUNNING)
        if not self.steps:
            self.analyze()

    def accept(self) -> Optional[InteractionResponse]:
        """Run every step and return the verdict."""
        self.start()
        return self.run_all()

    def reject(self) -> None:
        self._require(DiagnosticPhase.CONFIRM)
        self.rejected = True
        self._set_phase(DiagnosticPhase.COMPLETED)
        if self.on_done:
            self.on_done()

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------
    def run_next_step(self) -> Optional[StepResult]:
        self._require(DiagnosticPhase.RUNNING)
        if self.current_index >= len(self.steps):
            self.analyze()
            return None

        step = self.steps[self.current_index]
        logger.info("diagnostic step %s/%s: %s", self.current_index + 1, len(self.steps), step.command)
        outcome = self.runner.execute(step.command)
        result = StepResult(
            step=step,
            output=outcome.output or ("(no output)" if outcome.success else ""),
            success=outcome.success,
            error=outcome.error,
        )
        self.step_results.append(result)
        self.current_index += 1
        if self.on_step:
            self.on_step(result)

        if self.current_index >= len(self.steps):
            self.analyze()
        return result

    def run_all(self) -> Optional[InteractionResponse]:
        while self.phase is DiagnosticPhase.RUNNING:
            self.run_next_step()
        return self.verdict

    # ------------------------------------------------------------------
    # Analyzing
    # ------------------------------------------------------------------
    def analyze(self) -> InteractionResponse:
        self._require(DiagnosticPhase.RUNNING)
        self._set_phase(DiagnosticPhase.ANALYZING)
        analysis_prompt = build_diagnostic_prompt(self.prompt, self.chain, self.step_results)

        try:
            verdict = self.assistant.get_ai_response(analysis_prompt, recovery=True)
        except Exception as exc:  # noqa: BLE001
            logger.error("Diagnostic analysis failed: %s", exc)
            verdict = InteractionResponse(
                type="conversation",
                content=f"Failed to get AI analysis: {exc}\n\n{analysis_prompt}",
                confidence=5,
            )
        else:
            self._log_verdict(verdict)

        self.verdict = verdict
        if self.on_next:
            self.on_next(verdict)
        self._set_phase(DiagnosticPhase.COMPLETED)
        if self.on_done:
            self.on_done()
        return verdict

    def _log_verdict(self, verdict: InteractionResponse) -> None:
        entry = CommandOutput(prompt=self.prompt, command="", output=verdict.content, type="explanation")
        try:
            self.history.append(entry)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to log diagnostic verdict: %s", exc)
