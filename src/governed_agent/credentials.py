"""
Credential providers for the task-engine API.

The push channel and the command dispatcher never read ambient state for their
credential; they are handed a provider at construction and ask it for a token each
time a request or (re)connection is made, so rotated tokens are picked up.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, cast

from .errors import CredentialError
from .settings import Settings

logger = logging.getLogger(__name__)

TOKEN_FIELDS = ("access_token", "accessToken", "token")


class CredentialProvider(Protocol):
    """Source of the bearer credential for the task-engine API."""

    async def get_token(self) -> str:
        ...


class StaticCredentialProvider:
    """Always returns the token it was created with."""

    def __init__(self, token: str):
        if not token:
            raise CredentialError("Static credential must not be empty")
        self._token = token

    async def get_token(self) -> str:
        return self._token


class EnvCredentialProvider:
    """Reads the token from an environment variable on every call."""

    def __init__(self, variable: str = "GOVERNED_AUTH_TOKEN"):
        self.variable = variable

    async def get_token(self) -> str:
        token = os.getenv(self.variable)
        if not token:
            raise CredentialError(f"Environment variable {self.variable} is not set")
        return token


def read_token_file(path: Path) -> Optional[Dict[str, Any]]:
    """Read the token JSON at `path`, returning None when missing, unreadable or not an object."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.exception("Failed to read token file", extra={"path": str(path)})
        return None
    if not isinstance(data, dict):
        logger.warning("Token file does not hold a JSON object", extra={"path": str(path)})
        return None
    return cast(Dict[str, Any], data)


class TokenFileCredentialProvider:
    """Reads an access token from a JSON file such as ``{"access_token": "..."}``."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def get_token(self) -> str:
        data = read_token_file(self.path)
        if not data:
            raise CredentialError(f"No token file found at {self.path}")
        for field_name in TOKEN_FIELDS:
            value = data.get(field_name)
            if isinstance(value, str) and value:
                return value
        raise CredentialError(f"Token file {self.path} does not contain an access token")


def credential_provider_from_settings(settings: Settings) -> CredentialProvider:
    """Pick a provider: literal token first, then token file, then the environment."""
    if settings.auth_token:
        return StaticCredentialProvider(settings.auth_token)
    if settings.token_file:
        return TokenFileCredentialProvider(settings.token_file)
    return EnvCredentialProvider()
