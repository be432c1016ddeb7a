"""Per-session credential holder.

The credential is supplied once at login, validated with a probe call, and
handed explicitly to the generation client and the prompt assistant.
Nothing reads it from module globals.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

log = logging.getLogger(__name__)

PROVIDERS = ("gemini", "replicate")


class GenerationError(RuntimeError):
    """A generation call failed. ``reason`` is the user-facing message."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class CredentialError(GenerationError):
    """No usable credential: the user has to log in again."""


class SessionContext:
    """Holds the one credential of a client session."""

    def __init__(self, api_key: Optional[str] = None, provider: str = "gemini") -> None:
        self._lock = threading.Lock()
        self._api_key: Optional[str] = None
        self._provider = "gemini"
        if api_key:
            self.set(api_key, provider)
        else:
            self._provider = provider

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def has_credential(self) -> bool:
        return bool(self._api_key)

    def set(self, api_key: str, provider: str = "gemini") -> None:
        if provider not in PROVIDERS:
            raise ValueError(f"provider must be one of {PROVIDERS}")
        with self._lock:
            self._api_key = api_key.strip() or None
            self._provider = provider
        log.info("Session credential set for provider=%s", provider)

    def require(self) -> str:
        key = self._api_key
        if not key:
            raise CredentialError(
                "API key is missing. Please log in with a valid API key."
            )
        return key

    def clear(self) -> None:
        with self._lock:
            self._api_key = None
        log.info("Session credential cleared")
