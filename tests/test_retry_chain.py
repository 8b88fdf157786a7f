from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest

from mindshell.errors import LLMRequestError, ProviderError
from mindshell.executor import CommandRunner
from mindshell.models import CommandOutput, InteractionResponse
from mindshell.parser import parse_ai_response
from mindshell.retry_chain import RetryChainManager


@dataclass
class FakeRunner:
    results: Dict[str, CommandOutput] = field(default_factory=dict)
    executed: List[str] = field(default_factory=list)

    def execute(self, raw_input: str) -> CommandOutput:
        self.executed.append(raw_input)
        return self.results.get(
            raw_input,
            CommandOutput(prompt=raw_input, command=raw_input, output="ok", exit_code=0),
        )


@dataclass
class FakeAssistant:
    reply: Optional[InteractionResponse] = None
    error: Optional[Exception] = None
    prompts: List[str] = field(default_factory=list)
    recovery_flags: List[bool] = field(default_factory=list)

    def context(self) -> Dict[str, str]:
        return {"os": "linux", "shell": "bash"}

    def get_ai_response(self, prompt: str, recovery: bool = False) -> InteractionResponse:
        self.prompts.append(prompt)
        self.recovery_flags.append(recovery)
        if self.error is not None:
            raise self.error
        assert self.reply is not None
        return self.reply


@dataclass
class FakeHistory:
    entries: List[CommandOutput] = field(default_factory=list)
    fail: bool = False

    def append(self, entry: CommandOutput) -> None:
        if self.fail:
            raise OSError("disk full")
        self.entries.append(entry)


def _failure(command: str, error: str, exit_code: int = 1) -> CommandOutput:
    return CommandOutput(prompt=command, command=command, output="", error=error, exit_code=exit_code)


def test_missing_file_asks_ai_for_a_new_attempt(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    assistant = FakeAssistant(
        reply=parse_ai_response('{"type": "command", "content": "Look for it", "command": "find . -name missing.txt", "confidence": 7}')
    )
    history = FakeHistory()
    manager = RetryChainManager(CommandRunner(), assistant, history)

    outcome = manager.handle_command("show missing.txt", "cat missing.txt")

    assert outcome.done is False
    assert outcome.next_response.type == "command"
    assert outcome.next_response.command == "find . -name missing.txt"
    assert outcome.next_response.confidence == 7

    user_attempt, ai_attempt = outcome.chain.attempts
    assert (user_attempt.origin, user_attempt.command) == ("user", "cat missing.txt")
    assert user_attempt.error.startswith("ENOENT")
    assert (ai_attempt.origin, ai_attempt.command) == ("ai", "find . -name missing.txt")

    prompt = assistant.prompts[0]
    assert assistant.recovery_flags == [True]
    assert "cat missing.txt" in prompt
    assert "ENOENT: No such file or directory, open 'missing.txt'" in prompt
    assert "- Operating System: linux" in prompt

    assert [entry.command for entry in history.entries] == ["cat missing.txt"]
    assert history.entries[0].error.startswith("ENOENT")


def test_success_completes_without_asking_ai() -> None:
    runner = FakeRunner({"ls": CommandOutput(prompt="ls", command="ls", output="a.txt\nb.txt", exit_code=0)})
    assistant = FakeAssistant()
    history = FakeHistory()

    outcome = RetryChainManager(runner, assistant, history).handle_command("list files", "ls")

    assert outcome.done is True
    assert outcome.next_response.type == "command"
    assert outcome.next_response.content == "a.txt\nb.txt"
    assert outcome.next_response.command == "ls"
    assert outcome.next_response.confidence == 9
    assert len(outcome.chain.attempts) == 1
    assert outcome.chain.last.output == "a.txt\nb.txt"
    assert outcome.chain.last.error is None
    assert assistant.prompts == []
    assert history.entries[0].prompt == "list files"
    assert history.entries[0].type == "command"


def test_follow_up_extends_the_same_chain_without_touching_earlier_attempts() -> None:
    runner = FakeRunner({"cat a.txt": _failure("cat a.txt", "ENOENT")})
    assistant = FakeAssistant(reply=InteractionResponse(type="command", content="try ls", command="ls"))
    manager = RetryChainManager(runner, assistant, FakeHistory())

    first = manager.handle_command("show a", "cat a.txt")
    before = copy.deepcopy(first.chain.attempts)

    second = manager.handle_command("show a", first.next_response.command, first.chain)

    assert second.chain is first.chain
    assert second.done is True
    assert len(second.chain.attempts) == 3
    assert second.chain.attempts[:2] == before
    assert [a.origin for a in second.chain.attempts] == ["user", "ai", "user"]
    assert runner.executed == ["cat a.txt", "ls"]


def test_history_failures_are_swallowed() -> None:
    runner = FakeRunner({"false": _failure("false", "Command failed with exit code 1")})
    assistant = FakeAssistant(reply=InteractionResponse(type="explanation", content="false always fails"))

    outcome = RetryChainManager(runner, assistant, FakeHistory(fail=True)).handle_command("p", "false")

    assert outcome.done is False
    assert outcome.next_response.content == "false always fails"
    assert outcome.chain.last.command == ""


def test_attempt_cap_gives_up_without_asking_ai() -> None:
    runner = FakeRunner({"make": _failure("make", "No rule to make target")})
    assistant = FakeAssistant()

    outcome = RetryChainManager(runner, assistant, FakeHistory(), max_attempts=1).handle_command("build", "make")

    assert outcome.done is True
    assert outcome.next_response.type == "explanation"
    assert outcome.next_response.content.startswith("Giving up after 1 failed attempts")
    assert "No rule to make target" in outcome.next_response.content
    assert assistant.prompts == []
    assert len(outcome.chain.attempts) == 1


def test_provider_misconfiguration_propagates() -> None:
    runner = FakeRunner({"false": _failure("false", "boom")})
    assistant = FakeAssistant(error=ProviderError("openai API key is not set"))

    with pytest.raises(ProviderError):
        RetryChainManager(runner, assistant, FakeHistory()).handle_command("p", "false")


def test_transport_failure_becomes_conversation_reply() -> None:
    runner = FakeRunner({"false": _failure("false", "boom")})
    assistant = FakeAssistant(error=LLMRequestError("openai request failed: timeout"))

    outcome = RetryChainManager(runner, assistant, FakeHistory()).handle_command("p", "false")

    assert outcome.done is False
    assert outcome.next_response.type == "conversation"
    assert "openai request failed: timeout" in outcome.next_response.content
    assert len(outcome.chain.attempts) == 2
    assert outcome.chain.last.origin == "ai"
