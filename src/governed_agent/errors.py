"""Error taxonomy for the governed agent client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classes of failure that reach the user as visible errors."""

    CHANNEL = "channel"
    COMMAND = "command"
    LOAD = "load"


@dataclass(frozen=True)
class ErrorRecord:
    """A user-facing error; command errors are dismissable."""

    kind: ErrorKind
    message: str
    command: Optional[str] = None
    status_code: Optional[int] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dismissable(self) -> bool:
        return self.kind is ErrorKind.COMMAND

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "dismissable": self.dismissable,
            "occurredAt": self.occurred_at.isoformat(),
        }
        if self.command is not None:
            payload["command"] = self.command
        if self.status_code is not None:
            payload["statusCode"] = self.status_code
        return payload


class GovernedAgentError(Exception):
    """Base class for governed agent client errors."""


class TaskEngineError(GovernedAgentError):
    """A call to the task-engine API failed (transport error or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class StaleModeError(GovernedAgentError):
    """A mode-specific command was issued against a task that has moved on."""

    def __init__(self, command: str, current_mode: Any, expected: Any):
        self.command = command
        self.current_mode = current_mode
        self.expected = expected
        super().__init__(
            f"Cannot {command} while task is in {getattr(current_mode, 'value', current_mode)} "
            f"(expected {expected})"
        )


class ChannelClosedError(GovernedAgentError):
    """The push channel was fully closed and will not reconnect."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CredentialError(GovernedAgentError):
    """No credential could be obtained from the configured provider."""
