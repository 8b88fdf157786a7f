from __future__ import annotations

import json

from mindshell.models import DiagnosticStep
from mindshell.parser import parse_ai_response, strip_code_fence


def test_fenced_json_is_parsed() -> None:
    raw = '```json\n{"type": "command", "content": "List files", "command": "ls -la", "confidence": 9}\n```'

    response = parse_ai_response(raw)

    assert response.type == "command"
    assert response.content == "List files"
    assert response.command == "ls -la"
    assert response.confidence == 9


def test_plain_fence_and_bare_json() -> None:
    assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'
    assert parse_ai_response('{"type": "answer", "content": "42"}').type == "answer"


def test_invalid_fields_are_dropped_individually() -> None:
    raw = json.dumps(
        {
            "type": "command",
            "content": "Find it",
            "command": 42,
            "confidence": "high",
            "safe": "yes",
            "explanation": "searches the tree",
        }
    )

    response = parse_ai_response(raw)

    assert response.type == "command"
    assert response.content == "Find it"
    assert response.command is None
    assert response.confidence == 5
    assert response.safe is None
    assert response.explanation == "searches the tree"


def test_unknown_type_falls_back_to_explanation() -> None:
    response = parse_ai_response('{"type": "poem", "content": "roses"}')

    assert response.type == "explanation"
    assert response.content == "roses"


def test_missing_content_uses_cleaned_text() -> None:
    raw = '```json\n{"type": "command", "command": "pwd"}\n```'

    response = parse_ai_response(raw)

    assert response.content == '{"type": "command", "command": "pwd"}'
    assert response.command == "pwd"


def test_non_json_becomes_conversation() -> None:
    response = parse_ai_response("Sure! You can use `ls` for that.")

    assert response.type == "conversation"
    assert response.content == "Sure! You can use `ls` for that."
    assert response.confidence == 5


def test_json_that_is_not_an_object_becomes_conversation() -> None:
    response = parse_ai_response('["ls", "pwd"]')

    assert response.type == "conversation"
    assert response.content == '["ls", "pwd"]'


def test_diagnostic_steps_get_defaults() -> None:
    raw = json.dumps(
        {
            "type": "diagnostic",
            "content": "Let's look around",
            "steps": [
                {"label": "List files", "command": "ls -la"},
                "not a step",
                {"label": "Disk", "command": "df -h", "safe": "maybe", "explanation": "free space"},
            ],
            "final_command": "cat app.log",
            "final_safe": True,
        }
    )

    response = parse_ai_response(raw)

    assert response.type == "diagnostic"
    assert response.steps == [
        DiagnosticStep(label="List files", command="ls -la", explanation="", safe=False),
        DiagnosticStep(label="", command="", explanation="", safe=False),
        DiagnosticStep(label="Disk", command="df -h", explanation="free space", safe=False),
    ]
    assert response.final_command == "cat app.log"
    assert response.final_safe is True


def test_steps_that_are_not_a_list_are_dropped() -> None:
    response = parse_ai_response('{"type": "diagnostic", "content": "x", "steps": "ls"}')

    assert response.steps is None


def test_already_decoded_payload_is_accepted() -> None:
    response = parse_ai_response({"type": "answer", "content": "yes", "confidence": 8})

    assert (response.type, response.content, response.confidence) == ("answer", "yes", 8)
