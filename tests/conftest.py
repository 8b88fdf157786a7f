from __future__ import annotations

import pytest

ENV_VARS = (
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "XAI_API_KEY",
    "GROK_API_KEY",
    "MINDSHELL_MODEL",
    "MINDSHELL_SHELL_MODE",
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config, history and cache files out of the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return home
