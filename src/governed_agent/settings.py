from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class StreamSettings:
    """Push channel (server-sent events) settings."""

    # Reconnection backoff
    retry_delay: float
    max_retry_delay: float
    max_reconnects: int  # 0 means reconnect forever

    # A stream with no bytes for this long is treated as a dropped connection
    read_timeout: float


@dataclass(frozen=True)
class Settings:
    """Simple settings container sourced from environment variables."""

    api_base_url: str

    # Credential sources for the task-engine API
    auth_token: Optional[str]
    token_file: Optional[Path]

    request_timeout: float
    connect_timeout: float

    stream: StreamSettings

    # Local HTTP surface
    local_auth_token: Optional[str]
    host: str
    port: int


def _get_stream_settings() -> StreamSettings:
    """Load stream settings from environment variables."""
    return StreamSettings(
        retry_delay=float(os.getenv("GOVERNED_STREAM_RETRY_DELAY", "1.0")),
        max_retry_delay=float(os.getenv("GOVERNED_STREAM_MAX_RETRY_DELAY", "30.0")),
        max_reconnects=int(os.getenv("GOVERNED_STREAM_MAX_RECONNECTS", "0")),
        read_timeout=float(os.getenv("GOVERNED_STREAM_READ_TIMEOUT", "90")),
    )


def validate_settings(settings: Settings) -> None:
    """Validate settings and raise ValueError for invalid configurations."""
    errors = []

    if not settings.api_base_url.startswith(("http://", "https://")):
        errors.append("GOVERNED_API_BASE_URL must be an http(s) URL")

    if settings.request_timeout <= 0:
        errors.append("GOVERNED_REQUEST_TIMEOUT must be positive")

    if settings.connect_timeout <= 0:
        errors.append("GOVERNED_CONNECT_TIMEOUT must be positive")

    stream = settings.stream
    if stream.retry_delay <= 0:
        errors.append("GOVERNED_STREAM_RETRY_DELAY must be positive")

    if stream.max_retry_delay < stream.retry_delay:
        errors.append(
            "GOVERNED_STREAM_MAX_RETRY_DELAY must not be lower than GOVERNED_STREAM_RETRY_DELAY"
        )

    if stream.max_reconnects < 0:
        errors.append("GOVERNED_STREAM_MAX_RECONNECTS must be non-negative")

    if stream.read_timeout <= 0:
        errors.append("GOVERNED_STREAM_READ_TIMEOUT must be positive")

    if not 0 < settings.port < 65536:
        errors.append("GOVERNED_PORT must be a valid TCP port")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(
            f"  - {error}" for error in errors
        )
        raise ValueError(error_msg)


@lru_cache()
def get_settings() -> Settings:
    """Return cached and validated settings."""
    api_base_url = os.getenv("GOVERNED_API_BASE_URL", "http://localhost:8000/api").rstrip("/")

    auth_token = os.getenv("GOVERNED_AUTH_TOKEN")
    token_file_raw = os.getenv("GOVERNED_TOKEN_FILE")
    token_file = Path(token_file_raw).expanduser() if token_file_raw else None

    request_timeout = float(os.getenv("GOVERNED_REQUEST_TIMEOUT", "30"))
    connect_timeout = float(os.getenv("GOVERNED_CONNECT_TIMEOUT", "10"))

    settings = Settings(
        api_base_url=api_base_url,
        auth_token=auth_token,
        token_file=token_file,
        request_timeout=request_timeout,
        connect_timeout=connect_timeout,
        stream=_get_stream_settings(),
        local_auth_token=os.getenv("GOVERNED_LOCAL_AUTH_TOKEN"),
        host=os.getenv("GOVERNED_HOST", "localhost"),
        port=int(os.getenv("GOVERNED_PORT", "8010")),
    )

    validate_settings(settings)

    return settings


def create_example_env_file() -> str:
    """Generate an example .env file for the governed agent client."""
    return """# Governed Agent Client Configuration
GOVERNED_API_BASE_URL=http://localhost:8000/api

# Credential for the task-engine API (either a literal token or a JSON token file
# containing {"access_token": "..."})
GOVERNED_AUTH_TOKEN=your-access-token
# GOVERNED_TOKEN_FILE=~/.config/governed-agent/auth.json

GOVERNED_REQUEST_TIMEOUT=30
GOVERNED_CONNECT_TIMEOUT=10

# Push channel reconnection
GOVERNED_STREAM_RETRY_DELAY=1.0
GOVERNED_STREAM_MAX_RETRY_DELAY=30.0
# 0 reconnects forever
GOVERNED_STREAM_MAX_RECONNECTS=0
GOVERNED_STREAM_READ_TIMEOUT=90

# Local HTTP surface
GOVERNED_LOCAL_AUTH_TOKEN=
GOVERNED_HOST=localhost
GOVERNED_PORT=8010
"""
