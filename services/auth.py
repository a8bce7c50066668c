"""Bearer token providers for the document API.

Token issuance lives elsewhere; this module only reads the current token.
"""

from __future__ import annotations

from typing import Protocol

from config.settings import get_settings


class TokenProvider(Protocol):
    def get_token(self) -> str | None:
        """Return the current bearer token, or None when not logged in."""
        ...


class StaticTokenProvider:
    """Serves a fixed token (service account or tests)."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    def get_token(self) -> str | None:
        return self._token or None

    def update(self, token: str | None) -> None:
        """Hot-swap the token after re-authentication."""
        self._token = token


def settings_token_provider() -> StaticTokenProvider:
    """Token provider backed by ``DOCUMENTS_ACCESS_TOKEN``."""
    return StaticTokenProvider(get_settings().documents_access_token)
