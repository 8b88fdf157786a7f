"""Turn raw provider text into an ``InteractionResponse``."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from jsonschema import Draft7Validator

from .models import RESPONSE_TYPES, DiagnosticStep, InteractionResponse

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 5

STEP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "label": {"type": "string"},
        "command": {"type": "string"},
        "explanation": {"type": "string"},
        "safe": {"type": "boolean"},
    },
}

INTERACTION_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": list(RESPONSE_TYPES)},
        "content": {"type": "string"},
        "confidence": {"type": "number"},
        "command": {"type": "string"},
        "explanation": {"type": "string"},
        "safe": {"type": "boolean"},
        "llm_output": {"type": "string"},
        "final_command": {"type": "string"},
        "final_safe": {"type": "boolean"},
        "steps": {"type": "array", "items": STEP_SCHEMA},
    },
}

_validator = Draft7Validator(INTERACTION_RESPONSE_SCHEMA)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fence(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```"):
        clean = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", clean)).strip()
    return clean


def _invalid_paths(payload: Dict[str, Any]) -> Set[Tuple[Any, ...]]:
    invalid = set()
    for error in _validator.iter_errors(payload):
        path = tuple(error.absolute_path)
        if path:
            invalid.add(path)
            logger.debug("Dropping invalid field %s: %s", "/".join(map(str, path)), error.message)
    return invalid


def _valid(payload: Dict[str, Any], invalid: Set[Tuple[Any, ...]], *path: Any) -> Optional[Any]:
    if path in invalid:
        return None
    value: Any = payload
    for key in path:
        if isinstance(value, dict):
            value = value.get(key)
        elif isinstance(value, list) and isinstance(key, int) and key < len(value):
            value = value[key]
        else:
            return None
    return value


def _parse_steps(payload: Dict[str, Any], invalid: Set[Tuple[Any, ...]]) -> Optional[List[DiagnosticStep]]:
    raw_steps = _valid(payload, invalid, "steps")
    if not isinstance(raw_steps, list):
        return None
    steps = []
    for index in range(len(raw_steps)):
        def field(name: str, default: Any) -> Any:
            if ("steps", index) in invalid:
                return default
            value = _valid(payload, invalid, "steps", index, name)
            return default if value is None else value

        steps.append(
            DiagnosticStep(
                label=field("label", ""),
                command=field("command", ""),
                explanation=field("explanation", ""),
                safe=field("safe", False),
            )
        )
    return steps


def parse_ai_response(content: Any) -> InteractionResponse:
    """Parse a JSON reply, optionally wrapped in a ```json fence.

    Fields that fail schema validation are dropped one by one; anything that
    is not a JSON object becomes a ``conversation`` reply carrying the text.
    """
    if not isinstance(content, str):
        content = json.dumps(content) if isinstance(content, (dict, list)) else str(content)
    clean = strip_code_fence(content)

    try:
        parsed = json.loads(clean)
    except json.JSONDecodeError:
        parsed = None

    if not isinstance(parsed, dict):
        snippet = clean if len(clean) <= 600 else clean[:600] + "…"
        logger.warning("AI reply is not a JSON object; treating as conversation: %s", snippet)
        return InteractionResponse(type="conversation", content=clean, confidence=FALLBACK_CONFIDENCE)

    invalid = _invalid_paths(parsed)
    response_type = _valid(parsed, invalid, "type")
    response_content = _valid(parsed, invalid, "content")
    confidence = _valid(parsed, invalid, "confidence")
    return InteractionResponse(
        type=response_type if response_type is not None else "explanation",
        content=response_content if response_content is not None else clean,
        confidence=confidence if confidence is not None else FALLBACK_CONFIDENCE,
        command=_valid(parsed, invalid, "command"),
        explanation=_valid(parsed, invalid, "explanation"),
        safe=_valid(parsed, invalid, "safe"),
        steps=_parse_steps(parsed, invalid),
        final_command=_valid(parsed, invalid, "final_command"),
        final_safe=_valid(parsed, invalid, "final_safe"),
        llm_output=_valid(parsed, invalid, "llm_output"),
    )
