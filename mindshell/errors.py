"""Exceptions raised across component boundaries."""

from __future__ import annotations


class ProviderError(RuntimeError):
    """Provider misconfiguration: unknown provider, missing key or config."""


class LLMRequestError(RuntimeError):
    """A provider call failed in transport or returned an unexpected body."""


class CacheError(OSError):
    """Context cache could not be read or written."""
