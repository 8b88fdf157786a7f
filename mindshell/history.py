"""Interaction log plus command/ask input histories, stored as JSON arrays."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import active_storage_dir
from .models import CommandOutput

HISTORY_LIMIT = 30
COMMAND_HISTORY_LIMIT = 100

HISTORY_FILE = "history.json"
COMMAND_HISTORY_FILE = "commandhistory.json"
ASK_HISTORY_FILE = "ask-history.json"

logger = logging.getLogger(__name__)


class HistoryStore:
    """Reads and writes the history files of one metadata directory."""

    def __init__(self, storage_dir: Optional[Path] = None) -> None:
        self._storage_dir = Path(storage_dir) if storage_dir else None

    @property
    def storage_dir(self) -> Path:
        if self._storage_dir is None:
            return active_storage_dir()
        self._storage_dir.mkdir(parents=True, exist_ok=True)
        return self._storage_dir

    def _read_list(self, filename: str) -> List[Any]:
        path = self.storage_dir / filename
        if not path.exists():
            return []
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return []
        return parsed if isinstance(parsed, list) else []

    def _write_list(self, filename: str, items: List[Any], limit: int) -> None:
        path = self.storage_dir / filename
        path.write_text(json.dumps(items[-limit:], indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Interaction log
    # ------------------------------------------------------------------
    def load_history(self) -> List[CommandOutput]:
        return [
            CommandOutput.from_record(item)
            for item in self._read_list(HISTORY_FILE)
            if isinstance(item, dict)
        ]

    def save_history(self, history: List[CommandOutput]) -> None:
        self._write_list(HISTORY_FILE, [entry.to_record() for entry in history], HISTORY_LIMIT)

    def append(self, entry: CommandOutput) -> None:
        """Fire-and-forget append; failures are logged, never raised."""
        try:
            records: List[Dict[str, Any]] = [
                item for item in self._read_list(HISTORY_FILE) if isinstance(item, dict)
            ]
            records.append(entry.to_record())
            self._write_list(HISTORY_FILE, records, HISTORY_LIMIT)
        except OSError as exc:
            logger.warning("Failed to append interaction history: %s", exc)

    # ------------------------------------------------------------------
    # Input histories
    # ------------------------------------------------------------------
    def _load_strings(self, filename: str) -> List[str]:
        items = self._read_list(filename)
        return items if all(isinstance(item, str) for item in items) else []

    def load_command_history(self) -> List[str]:
        return self._load_strings(COMMAND_HISTORY_FILE)

    def save_command_history(self, history: List[str]) -> None:
        self._write_list(COMMAND_HISTORY_FILE, list(history), COMMAND_HISTORY_LIMIT)

    def load_ask_history(self) -> List[str]:
        return self._load_strings(ASK_HISTORY_FILE)

    def save_ask_history(self, history: List[str]) -> None:
        self._write_list(ASK_HISTORY_FILE, list(history), COMMAND_HISTORY_LIMIT)

    def remember_command(self, command: str) -> None:
        try:
            self.save_command_history(self.load_command_history() + [command])
        except OSError as exc:
            logger.warning("Failed to save command history: %s", exc)

    def remember_ask(self, prompt: str) -> None:
        try:
            self.save_ask_history(self.load_ask_history() + [prompt])
        except OSError as exc:
            logger.warning("Failed to save ask history: %s", exc)
