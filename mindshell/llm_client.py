"""Provider clients: send (prompt, system prompt, model, key), get raw text back."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import DEFAULT_OLLAMA_URL
from .errors import LLMRequestError, ProviderError
from .progress import DownloadProgress

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 45
PULL_TIMEOUT = 600


class LLMClient:
    """Handles communication with the supported LLM backends over HTTP."""

    OPENAI_URL = "https://api.openai.com/v1/chat/completions"
    GROK_URL = "https://api.x.ai/v1/chat/completions"
    GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(
        self,
        *,
        ollama_url: str = DEFAULT_OLLAMA_URL,
        temperature: float = 0.1,
        timeout: float = REQUEST_TIMEOUT,
        progress: Optional[DownloadProgress] = None,
    ) -> None:
        self.ollama_url = ollama_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self.progress = progress
        self._providers: Dict[str, Callable[[str, str, str, str], str]] = {
            "openai": self._call_openai,
            "gemini": self._call_gemini,
            "grok": self._call_grok,
            "ollama": self._call_ollama,
        }

    @property
    def providers(self) -> List[str]:
        return sorted(self._providers)

    def generate(self, provider: str, prompt: str, system_prompt: str, model_id: str, api_key: str = "") -> str:
        """Return the provider's raw reply text.

        Raises ``ProviderError`` for an unknown provider or a missing key and
        ``LLMRequestError`` for transport failures or unexpected bodies.
        """
        handler = self._providers.get(provider)
        if handler is None:
            raise ProviderError(f"Unsupported model provider: {provider}")

        logger.info("llm_request: provider=%s model=%s prompt=%s chars", provider, model_id, len(prompt))
        try:
            text = handler(prompt, system_prompt, model_id, api_key)
        except requests.RequestException as exc:
            logger.error("%s request failed: %s", provider, exc)
            raise LLMRequestError(f"{provider} request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.error("Unexpected %s response: %s", provider, exc)
            raise LLMRequestError(f"Unexpected {provider} response: {exc}") from exc
        logger.debug("llm_reply (%s): %s", provider, text)
        return text

    # ------------------------------------------------------------------
    # Hosted providers
    # ------------------------------------------------------------------
    def _chat_completion(self, url: str, prompt: str, system_prompt: str, model_id: str, api_key: str) -> str:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": model_id,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        }
        response = requests.post(url, headers=headers, json=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        return data["choices"][0]["message"]["content"]

    def _call_openai(self, prompt: str, system_prompt: str, model_id: str, api_key: str) -> str:
        if not api_key:
            raise ProviderError("OpenAI API key is not set")
        return self._chat_completion(self.OPENAI_URL, prompt, system_prompt, model_id, api_key)

    def _call_grok(self, prompt: str, system_prompt: str, model_id: str, api_key: str) -> str:
        if not api_key:
            raise ProviderError("Grok API key is not set")
        return self._chat_completion(self.GROK_URL, prompt, system_prompt, model_id, api_key)

    def _call_gemini(self, prompt: str, system_prompt: str, model_id: str, api_key: str) -> str:
        if not api_key:
            raise ProviderError("Gemini API key is not set")
        payload = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": self.temperature},
        }
        response = requests.post(
            self.GEMINI_URL.format(model=model_id),
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        return data["candidates"][0]["content"]["parts"][0]["text"]

    # ------------------------------------------------------------------
    # Ollama
    # ------------------------------------------------------------------
    def _call_ollama(self, prompt: str, system_prompt: str, model_id: str, api_key: str) -> str:
        self.ensure_ollama_model(model_id)
        payload = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        response = requests.post(f"{self.ollama_url}/api/chat", json=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        return data["message"]["content"]

    def list_ollama_models(self) -> List[str]:
        response = requests.get(f"{self.ollama_url}/api/tags", timeout=3)
        response.raise_for_status()
        return [model["name"] for model in response.json().get("models", [])]

    def ensure_ollama_model(self, model: str, progress: Optional[DownloadProgress] = None) -> None:
        """Pull ``model`` unless the local Ollama server already has it."""
        progress = progress or self.progress
        try:
            available = self.list_ollama_models()
        except requests.RequestException as exc:
            message = f"Ollama is not reachable at {self.ollama_url}. Install and start it from https://ollama.com"
            if progress:
                progress.fail(message)
            raise LLMRequestError(message) from exc

        wanted = model if ":" in model else f"{model}:latest"
        if model in available or wanted in available:
            logger.debug("Ollama model '%s' already present", model)
            return
        self.pull_ollama_model(model, progress)

    def pull_ollama_model(self, model: str, progress: Optional[DownloadProgress] = None) -> None:
        progress = progress or self.progress
        logger.info("Pulling Ollama model '%s'", model)
        if progress:
            progress.start(model)
        try:
            with requests.post(
                f"{self.ollama_url}/api/pull",
                json={"model": model, "stream": True},
                stream=True,
                timeout=PULL_TIMEOUT,
            ) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if line:
                        self._publish_pull_event(json.loads(line), progress)
        except (requests.RequestException, ValueError, LLMRequestError) as exc:
            message = f"Failed to download model '{model}': {exc}"
            logger.error(message)
            if progress:
                progress.fail(message)
            if isinstance(exc, LLMRequestError):
                raise
            raise LLMRequestError(message) from exc

        logger.info("Ollama model '%s' downloaded", model)
        if progress:
            progress.complete()

    @staticmethod
    def _publish_pull_event(event: Dict[str, Any], progress: Optional[DownloadProgress]) -> None:
        if event.get("error"):
            raise LLMRequestError(str(event["error"]))
        if progress is None:
            return
        status = str(event.get("status", ""))
        percentage = None
        total, completed = event.get("total"), event.get("completed")
        if isinstance(total, (int, float)) and total and isinstance(completed, (int, float)):
            percentage = round(completed * 100 / total, 1)

        lowered = status.lower()
        if "pulling" in lowered or "downloading" in lowered:
            progress.update(f"📥 {status}", "downloading", percentage)
        elif "verifying" in lowered:
            progress.update(f"🔍 {status}", "verifying", percentage)
        elif "writing" in lowered:
            progress.update(f"💾 {status}", "writing", percentage)
        elif lowered == "success":
            progress.update(f"✅ {status}", "complete", 100)
        elif status:
            progress.update(f"ℹ️  {status}", None, percentage)
