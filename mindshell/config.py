"""Configuration files, metadata directory discovery and logging setup."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ProviderError

METADATA_DIR_NAME = ".mindshell"
CONFIG_FILE_NAME = "config.json"
LOG_FILE = os.path.expanduser("~/.mindshell_logs/mindshell.log")

KEYED_PROVIDERS = {"openai", "gemini", "grok"}
KNOWN_PROVIDERS = KEYED_PROVIDERS | {"ollama"}

ENV_KEYS = {
    "openai": ("OPENAI_API_KEY",),
    "gemini": ("GEMINI_API_KEY",),
    "grok": ("XAI_API_KEY", "GROK_API_KEY"),
}

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_STREAM_TIMEOUT = 300.0
DEFAULT_OLLAMA_URL = "http://localhost:11434"

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO, log_file: str = LOG_FILE) -> logging.Logger:
    """Attach the file handler to the package logger once."""
    root_logger = logging.getLogger("mindshell")
    if not root_logger.handlers:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        root_logger.setLevel(level)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
        root_logger.addHandler(file_handler)
        root_logger.propagate = False
    return root_logger


def global_config_dir() -> Path:
    return Path.home() / METADATA_DIR_NAME


def find_metadata_dir(start_dir: Optional[Path] = None) -> Optional[Path]:
    """Walk up from ``start_dir`` to the first ancestor holding ``.mindshell/``."""
    current = Path(start_dir or Path.cwd()).resolve()
    while True:
        candidate = current / METADATA_DIR_NAME
        if candidate.is_dir():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def active_storage_dir(start_dir: Optional[Path] = None) -> Path:
    storage = find_metadata_dir(start_dir) or global_config_dir()
    storage.mkdir(parents=True, exist_ok=True)
    return storage


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _to_optional_float(value: Any, default: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else default
    return default


def _to_optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


@dataclass
class MindShellConfig:
    """Read-only settings consumed by the engine."""

    model: str
    api_keys: Dict[str, str] = field(default_factory=dict)
    is_shell_mode_active: bool = False
    project_path: Optional[str] = None
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    stream_timeout: Optional[float] = DEFAULT_STREAM_TIMEOUT
    max_retry_attempts: Optional[int] = None
    ollama_url: str = DEFAULT_OLLAMA_URL

    @property
    def provider(self) -> str:
        return split_model(self.model)[0]

    @property
    def model_id(self) -> str:
        return split_model(self.model)[1]

    def api_key(self) -> str:
        provider = self.provider
        key = self.api_keys.get(provider, "")
        if key:
            return key
        for env_name in ENV_KEYS.get(provider, ()):
            env_value = os.getenv(env_name)
            if env_value:
                return env_value
        return ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MindShellConfig":
        api_keys_raw = raw.get("APIKeys")
        api_keys = (
            {str(k): str(v) for k, v in api_keys_raw.items() if isinstance(v, str)}
            if isinstance(api_keys_raw, dict)
            else {}
        )
        shell_mode = raw.get("isShellModeActive")
        stream_timeout = (
            _to_optional_float(raw["streamTimeout"], DEFAULT_STREAM_TIMEOUT)
            if "streamTimeout" in raw
            else DEFAULT_STREAM_TIMEOUT
        )
        return cls(
            model=os.getenv("MINDSHELL_MODEL") or str(raw.get("model") or ""),
            api_keys=api_keys,
            is_shell_mode_active=_to_bool(
                os.getenv("MINDSHELL_SHELL_MODE"),
                default=shell_mode if isinstance(shell_mode, bool) else False,
            ),
            project_path=raw.get("ProjectPath") if isinstance(raw.get("ProjectPath"), str) else None,
            command_timeout=(
                _to_optional_float(raw.get("commandTimeout"), DEFAULT_COMMAND_TIMEOUT)
                or DEFAULT_COMMAND_TIMEOUT
            ),
            stream_timeout=stream_timeout,
            max_retry_attempts=_to_optional_int(raw.get("maxRetryAttempts")),
            ollama_url=str(raw.get("ollamaUrl") or DEFAULT_OLLAMA_URL).rstrip("/"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "APIKeys": dict(self.api_keys),
            "isShellModeActive": self.is_shell_mode_active,
        }
        if self.project_path:
            payload["ProjectPath"] = self.project_path
        return payload


def split_model(model: str) -> Tuple[str, str]:
    """``"openai:gpt-4o"`` -> ``("openai", "gpt-4o")``; a bare id is its own provider."""
    provider, _, model_id = model.partition(":")
    return provider, model_id or model


def _config_file(folder_path: Optional[Path]) -> Path:
    base = Path(folder_path) / METADATA_DIR_NAME if folder_path else global_config_dir()
    return base / CONFIG_FILE_NAME


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load config %s: %s", path, exc)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def load_config(folder_path: Optional[Path] = None) -> Optional[MindShellConfig]:
    """Load project config when present, otherwise the global one."""
    candidates = [_config_file(folder_path)] if folder_path else []
    candidates.append(_config_file(None))
    for path in candidates:
        raw = _read_json(path)
        if raw:
            return MindShellConfig.from_dict(raw)
    return None


def save_config(cfg: MindShellConfig, folder_path: Optional[Path] = None) -> Path:
    path = _config_file(folder_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = _read_json(path)
    existing.update(cfg.to_dict())
    with path.open("w", encoding="utf-8") as fh:
        json.dump(existing, fh, indent=2)
    return path


def save_project_path(project_root: Path) -> bool:
    """Record ``project_root`` in its own ``.mindshell/config.json``."""
    path = _config_file(project_root)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = _read_json(path)
        existing["ProjectPath"] = str(project_root)
        with path.open("w", encoding="utf-8") as fh:
            json.dump(existing, fh, indent=2)
    except OSError as exc:
        logger.error("Error saving project path: %s", exc)
        return False
    return True


def validate_directory_path(dir_path: str) -> bool:
    try:
        return Path(dir_path).expanduser().is_dir()
    except OSError:
        return False


def is_valid_config(cfg: MindShellConfig) -> bool:
    if not cfg.model:
        return False
    if cfg.provider in KEYED_PROVIDERS:
        return bool(cfg.api_key())
    return True


def require_provider(cfg: Optional[MindShellConfig]) -> Tuple[str, str, str]:
    """Return ``(provider, model_id, api_key)`` or raise ``ProviderError``."""
    if cfg is None or not cfg.model:
        raise ProviderError("Invalid or missing config: no model selected")
    provider = cfg.provider
    if provider not in KNOWN_PROVIDERS:
        raise ProviderError(f"Unsupported model provider: {provider}")
    api_key = cfg.api_key()
    if provider in KEYED_PROVIDERS and not api_key:
        raise ProviderError(f"{provider} API key is not set")
    return provider, cfg.model_id, api_key
