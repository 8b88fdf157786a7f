"""Attempt-chain state machine for AI-assisted failure recovery."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Optional, Protocol

from .assistant import Assistant
from .errors import LLMRequestError
from .executor import CommandRunner
from .history import HistoryStore
from .models import Attempt, CmdOutcome, CommandOutput, InteractionResponse, RetryChain
from .prompts import build_recovery_prompt

SUCCESS_CONFIDENCE = 9

logger = logging.getLogger(__name__)


class Runner(Protocol):
    def execute(self, raw_input: str) -> CommandOutput: ...


class AIGateway(Protocol):
    def context(self) -> Dict[str, str]: ...

    def get_ai_response(self, prompt: str, recovery: bool = False) -> InteractionResponse: ...


class HistoryLog(Protocol):
    def append(self, entry: CommandOutput) -> None: ...


def give_up_response(chain: RetryChain) -> InteractionResponse:
    executed = sum(1 for attempt in chain.attempts if attempt.origin == "user")
    return InteractionResponse(
        type="explanation",
        content=(
            f"Giving up after {executed} failed attempts. "
            f"Last command: {chain.last.command}\nLast error: {chain.last.error or 'No error info'}"
        ),
        confidence=SUCCESS_CONFIDENCE,
    )


class RetryChainManager:
    """Runs a command and, when it fails, asks the AI for the next attempt.

    Every call appends the user's attempt, executes it and records the
    outcome on that attempt. A failure appends the AI's suggestion too and
    returns ``done=False``; the caller decides whether to run it by calling
    ``handle_command`` again with the same chain.
    """

    def __init__(
        self,
        runner: Optional[Runner] = None,
        assistant: Optional[AIGateway] = None,
        history: Optional[HistoryLog] = None,
        *,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.assistant = assistant or Assistant()
        self.history = history or HistoryStore()
        self.max_attempts = max_attempts

    def handle_command(self, prompt: str, command: str, chain: Optional[RetryChain] = None) -> CmdOutcome:
        if chain is None:
            chain = RetryChain(attempts=[Attempt(origin="user", prompt=prompt, command=command)])
            logger.info("retry_chain %s started: %s", chain.id, command)
        else:
            chain.append(Attempt(origin="user", prompt=prompt, command=command))

        current = chain.last
        result = self.runner.execute(command)
        current.output = result.output
        current.error = result.error
        self._log(replace(result, prompt=prompt, command=command, type="command"))

        if result.success:
            logger.info("retry_chain %s resolved after %s attempts", chain.id, len(chain.attempts))
            response = InteractionResponse(
                type="command",
                content=result.output,
                command=command,
                confidence=SUCCESS_CONFIDENCE,
            )
            return CmdOutcome(done=True, next_response=response, chain=chain)

        executed = sum(1 for attempt in chain.attempts if attempt.origin == "user")
        if self.max_attempts is not None and executed >= self.max_attempts:
            logger.warning("retry_chain %s gave up after %s attempts", chain.id, executed)
            return CmdOutcome(done=True, next_response=give_up_response(chain), chain=chain)

        recovery_prompt = build_recovery_prompt(chain, self.assistant.context())
        try:
            suggestion = self.assistant.get_ai_response(recovery_prompt, recovery=True)
        except LLMRequestError as exc:
            logger.error("retry_chain %s: recovery request failed: %s", chain.id, exc)
            suggestion = InteractionResponse(
                type="conversation",
                content=f"Failed to get an AI recovery suggestion: {exc}",
                confidence=5,
            )

        chain.append(
            Attempt(
                origin="ai",
                prompt=prompt,
                command=suggestion.command or "",
                output=suggestion.content,
            )
        )
        return CmdOutcome(done=False, next_response=suggestion, chain=chain)

    def _log(self, entry: CommandOutput) -> None:
        try:
            self.history.append(entry)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to log attempt to history: %s", exc)
