"""AI gateway: config -> provider -> context -> prompt -> provider call -> parse."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Optional

from .config import MindShellConfig, find_metadata_dir, load_config, require_provider
from .context import ContextCache, to_simple_context
from .errors import ProviderError
from .llm_client import LLMClient
from .models import InteractionResponse
from .parser import parse_ai_response
from .progress import DownloadProgress
from .prompts import build_system_prompt

RECOVERY_USER_PROMPT = "Analyze the failure described above and reply with the JSON object only."

logger = logging.getLogger(__name__)

ContextListener = Callable[[str, Dict[str, object]], None]


def load_active_config() -> Optional[MindShellConfig]:
    metadata_dir = find_metadata_dir()
    return load_config(metadata_dir.parent if metadata_dir else None)


class Assistant:
    """Turns a user prompt (or a prebuilt recovery prompt) into a parsed reply."""

    def __init__(
        self,
        *,
        config_loader: Callable[[], Optional[MindShellConfig]] = load_active_config,
        client: Optional[LLMClient] = None,
        context_cache: Optional[ContextCache] = None,
        progress: Optional[DownloadProgress] = None,
        on_context: Optional[ContextListener] = None,
    ) -> None:
        self._config_loader = config_loader
        self._client = client
        self._context_cache = context_cache
        self.progress = progress
        self.on_context = on_context

    @property
    def context_cache(self) -> ContextCache:
        if self._context_cache is None:
            return ContextCache(Path.cwd())
        return self._context_cache

    def context(self) -> Dict[str, str]:
        """Flat context used by the system and recovery prompts."""
        full, compact, timing = self.context_cache.snapshot()
        logger.info("context: %s (%sms, cached=%s)", compact, timing["total"], timing["cached"])
        if self.on_context:
            self.on_context(compact, timing)
        return to_simple_context(full)

    def _client_for(self, cfg: MindShellConfig) -> LLMClient:
        if self._client is None:
            self._client = LLMClient(ollama_url=cfg.ollama_url, progress=self.progress)
        return self._client

    def get_ai_response(self, prompt: str, recovery: bool = False) -> InteractionResponse:
        """Ask the configured provider.

        With ``recovery=True`` the prompt is already a complete recovery or
        diagnostic prompt and is sent as the system instruction.
        """
        cfg = self._config_loader()
        if cfg is None:
            raise ProviderError("Invalid or missing config: no model selected")
        provider, model_id, api_key = require_provider(cfg)

        if recovery:
            system_prompt, user_prompt = prompt, RECOVERY_USER_PROMPT
        else:
            system_prompt, user_prompt = build_system_prompt(self.context()), prompt

        raw = self._client_for(cfg).generate(provider, user_prompt, system_prompt, model_id, api_key)
        return parse_ai_response(raw)
