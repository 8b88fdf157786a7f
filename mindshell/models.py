"""Data model shared by the runners, the retry chain and the diagnostics."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

AttemptOrigin = Literal["user", "ai"]
ResponseType = Literal["command", "explanation", "diagnostic", "answer", "conversation"]

RESPONSE_TYPES = ("command", "explanation", "diagnostic", "answer", "conversation")


@dataclass
class CommandOutput:
    """Result of running one line of input, builtin or external."""

    prompt: str
    command: str
    output: str
    type: str = "command"
    error: Optional[str] = None
    exit_code: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return not self.error

    def to_record(self) -> Dict[str, Any]:
        """Shape written to the interaction history log."""
        record: Dict[str, Any] = {
            "prompt": self.prompt,
            "output": self.output,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
        }
        if self.command:
            record["command"] = self.command
        if self.error is not None:
            record["error"] = self.error
        if self.exit_code is not None:
            record["exitCode"] = self.exit_code
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CommandOutput":
        raw_timestamp = record.get("timestamp")
        try:
            timestamp = datetime.fromisoformat(raw_timestamp) if raw_timestamp else datetime.now()
        except (TypeError, ValueError):
            timestamp = datetime.now()
        return cls(
            prompt=str(record.get("prompt", "")),
            command=str(record.get("command") or ""),
            output=str(record.get("output", "")),
            type=str(record.get("type", "")),
            error=record.get("error"),
            exit_code=record.get("exitCode"),
            timestamp=timestamp,
        )


@dataclass
class Attempt:
    """One (prompt, command, outcome) entry in a retry chain.

    ``output`` and ``error`` are written once, right after the command runs
    and before the next attempt is appended.
    """

    origin: AttemptOrigin
    prompt: str
    command: str
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RetryChain:
    """Ordered, append-only history of one failure-recovery conversation."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=datetime.now)
    attempts: List[Attempt] = field(default_factory=list)

    @property
    def last(self) -> Attempt:
        return self.attempts[-1]

    def append(self, attempt: Attempt) -> Attempt:
        self.attempts.append(attempt)
        return attempt

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "startedAt": self.started_at.isoformat(),
            "attempts": [asdict(attempt) for attempt in self.attempts],
        }


@dataclass
class DiagnosticStep:
    """AI-authored investigative command, consumed positionally."""

    label: str
    command: str
    explanation: str = ""
    safe: bool = False


@dataclass
class StepResult:
    step: DiagnosticStep
    output: str
    success: bool
    error: Optional[str] = None


@dataclass
class InteractionResponse:
    """Structured AI reply after parsing."""

    type: str
    content: str
    confidence: float = 5
    command: Optional[str] = None
    explanation: Optional[str] = None
    safe: Optional[bool] = None
    steps: Optional[List[DiagnosticStep]] = None
    final_command: Optional[str] = None
    final_safe: Optional[bool] = None
    llm_output: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class CmdOutcome:
    """What one step of the retry chain hands back to its caller."""

    done: bool
    next_response: InteractionResponse
    chain: RetryChain
