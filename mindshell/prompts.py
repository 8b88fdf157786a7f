"""Prompt construction. Pure functions: no I/O, no provider calls."""

from __future__ import annotations

import json
import textwrap
from typing import List, Mapping, Optional

from .models import RetryChain, StepResult

CONTEXT_LABELS = [
    ("os", "Operating System"),
    ("language", "Project Language"),
    ("shell", "Shell"),
    ("git_repo", "Git Repository"),
    ("package_managers", "Available Package Managers"),
    ("python_env", "Python Environment"),
]

RESPONSE_FORMAT = textwrap.dedent(
    """
    RESPONSE FORMAT (Always valid JSON):
    {
      "type": "command | diagnostic | explanation | conversation",
      "content": "Main explanation or response",
      "command": "Only if type is command",
      "explanation": "Optional explanation for command",
      "confidence": 1-10,
      "steps": [
        {
          "label": "What this step checks",
          "command": "Shell command",
          "explanation": "Why this step helps",
          "safe": true
        }
      ],
      "final_command": "Optional final shell command",
      "final_safe": true
    }
    Only include 'steps', 'final_command', and 'final_safe' if type === "diagnostic".
    """
).strip()


def context_lines(context: Mapping[str, str]) -> List[str]:
    return [f"- {label}: {context[key]}" for key, label in CONTEXT_LABELS if context.get(key)]


def build_system_prompt(context: Optional[Mapping[str, str]] = None) -> str:
    """Instructions plus the ``to_simple_context`` facts that are set."""
    head = textwrap.dedent(
        """
        You are an intelligent CLI assistant that understands user intent and responds appropriately.

        RESPONSE FORMAT: You must respond with a JSON object containing:
        {
          "type": "command|explanation|answer|conversation|diagnostic",
          "content": "your main response",
          "command": "shell command if type is command",
          "steps": [
            {
              "label": "Describe what this checks",
              "command": "shell command",
              "explanation": "What the user can learn from it",
              "safe": true
            }
          ],
          "final_command": "optional command to try at the end",
          "final_safe": false,
          "explanation": "optional explanation for commands",
          "confidence": 1-10
        }

        INTENT DETECTION:
        - "command": User wants to execute a shell command (e.g., "list files", "install package", "check git status")
        - "explanation": User wants to understand how something works (e.g., "how does grep work?", "explain docker")
        - "answer": User asks a factual question (e.g., "what is the difference between...", "when was...")
        - "conversation": User is chatting, greeting, or making casual conversation
        - "diagnostic": Provide 2-5 safe diagnostic steps to investigate

        COMMAND GUIDELINES:
        - Wrap any value the user must supply in angle brackets, e.g. <branch name>
        - Suggest the most appropriate single command or pipeline
        - Consider the user's environment and context
        - Use modern, safe practices
        - For complex operations, break into steps if needed
        - If a command may be dangerous (e.g. 'rm', 'dd', 'mkfs', 'chmod', 'reboot'), ALWAYS include a
          warning in the "explanation" field that starts with: "**WARNING:**"

        CONTEXT INFORMATION:
        """
    ).strip()

    lines = [head] + context_lines(context or {})

    tail = textwrap.dedent(
        """
        EXAMPLES:
        User: "list files" -> {"type": "command", "content": "ls -la", "command": "ls -la", "confidence": 9}
        User: "how does grep work?" -> {"type": "explanation", "content": "grep is a command-line utility...", "confidence": 8}
        User: "what is Python?" -> {"type": "answer", "content": "Python is a high-level programming language...", "confidence": 9}
        User: "hello" -> {"type": "conversation", "content": "Hello! How can I help you today?", "confidence": 10}

        Always respond with valid JSON only.
        """
    ).strip()
    return "\n".join(lines) + "\n\n" + tail


def _none(value: Optional[str]) -> str:
    return value if value is not None else "none"


def format_attempts(chain: RetryChain) -> str:
    """Every attempt, oldest first, with origin/prompt/command/output/error."""
    blocks = []
    for index, attempt in enumerate(chain.attempts, start=1):
        blocks.append(
            "\n".join(
                [
                    f"Attempt {index}:",
                    f"- Origin: {attempt.origin}",
                    f"- Prompt: {attempt.prompt}",
                    f"- Command: {attempt.command}",
                    f"- Output: {_none(attempt.output)}",
                    f"- Error: {_none(attempt.error)}",
                ]
            )
        )
    return "\n\n".join(blocks)


def build_recovery_prompt(chain: RetryChain, context: Optional[Mapping[str, str]] = None) -> str:
    last = chain.last
    recovery = "\n".join(
        [
            "--- SMART ERROR RECOVERY MODE ---",
            "",
            "The previous command failed.",
            "",
            "Command:",
            "```",
            last.command,
            "```",
            "",
            "Error:",
            "```",
            last.error or "No error info",
            "```",
            "",
            "Attempt history:",
            format_attempts(chain),
            "",
            "YOUR JOB:",
            "",
            "1. Analyze the error and determine what kind of response is best:",
            '   - "command": Suggest one shell command to fix the issue',
            '   - "diagnostic": Provide 2-5 safe diagnostic steps to investigate',
            '   - "explanation": Just explain why it failed if no command is useful',
            '   - "conversation": If the error is not technical, respond politely',
            "",
            "2. Respond in a consistent JSON format (see below)",
            "",
            RESPONSE_FORMAT,
        ]
    )
    return build_system_prompt(context) + "\n\n" + recovery


def format_step_results(results: List[StepResult]) -> str:
    summary = []
    for result in results:
        marker = "✅" if result.success else "❌"
        detail = result.output if result.success else (result.error or result.output)
        summary.append(f"🔍 {result.step.label}\n$ {result.step.command}\n{marker} {detail}\n")
    return "\n".join(summary)


def build_diagnostic_prompt(
    prompt: str,
    chain: Optional[RetryChain],
    results: List[StepResult],
) -> str:
    chain_json = json.dumps(chain.to_dict() if chain else None, indent=2)
    return "\n".join(
        [
            "Please analyze this diagnostic session:",
            "",
            f"📋 Original Issue:\n{prompt}",
            "",
            f"🔁 Retry Chain:\n{chain_json}",
            "",
            f"📊 Diagnostic Results:\n{format_step_results(results)}",
            "",
            "Please provide a short, simple summary and recommendations based on these diagnostic results.",
            "In content, mention the initial command and what was tried with the diagnostic steps.",
            "1. Analyze and determine what kind of response is best:",
            '   - "explanation": Just explain why it failed if no command is useful',
            "2. Respond in a consistent JSON format (see below)",
            "",
            RESPONSE_FORMAT,
        ]
    )
