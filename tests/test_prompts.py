from __future__ import annotations

import json

from mindshell.models import Attempt, DiagnosticStep, RetryChain, StepResult
from mindshell.prompts import (
    build_diagnostic_prompt,
    build_recovery_prompt,
    build_system_prompt,
    format_attempts,
)


def _chain() -> RetryChain:
    return RetryChain(
        attempts=[
            Attempt(origin="user", prompt="show notes", command="cat notes.txt", output="", error="ENOENT: no notes"),
            Attempt(origin="ai", prompt="show notes", command="ls", output="Check what exists"),
            Attempt(origin="user", prompt="show notes", command="cat docs/notes.md", output="", error="permission denied"),
        ]
    )


def test_system_prompt_lists_only_known_context() -> None:
    prompt = build_system_prompt({"os": "linux", "shell": "zsh", "language": "", "unused": "x"})

    assert "- Operating System: linux" in prompt
    assert "- Shell: zsh" in prompt
    assert "Project Language" not in prompt
    assert "unused" not in prompt
    assert prompt.rstrip().endswith("Always respond with valid JSON only.")


def test_attempts_are_listed_oldest_first() -> None:
    text = format_attempts(_chain())

    first, second, third = (text.index(f"Attempt {n}:") for n in (1, 2, 3))
    assert first < second < third
    assert "- Origin: ai\n- Prompt: show notes\n- Command: ls\n- Output: Check what exists\n- Error: none" in text


def test_unset_output_is_rendered_as_none() -> None:
    chain = RetryChain(attempts=[Attempt(origin="user", prompt="p", command="false")])

    assert "- Output: none\n- Error: none" in format_attempts(chain)


def test_recovery_prompt_carries_last_failure_and_full_history() -> None:
    prompt = build_recovery_prompt(_chain(), {"os": "darwin"})

    assert prompt.startswith("You are an intelligent CLI assistant")
    assert "- Operating System: darwin" in prompt
    assert "--- SMART ERROR RECOVERY MODE ---" in prompt
    assert "Command:\n```\ncat docs/notes.md\n```" in prompt
    assert "Error:\n```\npermission denied\n```" in prompt
    assert prompt.index("cat notes.txt") < prompt.index("Attempt 3:")
    assert "RESPONSE FORMAT (Always valid JSON)" in prompt


def test_recovery_prompt_without_error_text() -> None:
    chain = RetryChain(attempts=[Attempt(origin="user", prompt="p", command="false", output="")])

    assert "No error info" in build_recovery_prompt(chain)


def test_diagnostic_prompt_summarizes_steps_and_chain() -> None:
    chain = _chain()
    results = [
        StepResult(DiagnosticStep("List files", "ls"), output="a.txt", success=True),
        StepResult(DiagnosticStep("Read log", "cat app.log"), output="", success=False, error="ENOENT"),
    ]

    prompt = build_diagnostic_prompt("show notes", chain, results)

    assert "📋 Original Issue:\nshow notes" in prompt
    assert "🔍 List files\n$ ls\n✅ a.txt" in prompt
    assert "🔍 Read log\n$ cat app.log\n❌ ENOENT" in prompt
    assert json.dumps(chain.id) in prompt


def test_diagnostic_prompt_without_chain() -> None:
    prompt = build_diagnostic_prompt("why is it slow", None, [])

    assert "🔁 Retry Chain:\nnull" in prompt
