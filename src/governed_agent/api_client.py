"""
Task-engine API client.

Thin async wrapper over the governed task REST endpoints. Responses are enveloped
as ``{"data": ...}``; failures surface as TaskEngineError carrying the server's
message. Command responses are returned unparsed: their only contracted effect is a
later push event.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from httpx import AsyncClient, Response, Timeout
from pydantic import ValidationError

from .credentials import CredentialProvider
from .errors import CredentialError, TaskEngineError
from .models import AgentMode, GovernedTask
from .settings import Settings

logger = logging.getLogger(__name__)


def _error_message(response: Response) -> str:
    """Extract the server's message from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    text = response.text.strip()
    return text[:200] if text else f"HTTP {response.status_code}"


class TaskEngineClient:
    """Bearer-authenticated client for the task-engine API."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        http_client: Optional[AsyncClient] = None,
        request_timeout: float = 30.0,
        connect_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self._owns_client = http_client is None
        self.http_client = http_client or AsyncClient(
            timeout=Timeout(request_timeout, connect=connect_timeout),
            follow_redirects=True,
            max_redirects=3,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        credentials: CredentialProvider,
        http_client: Optional[AsyncClient] = None,
    ) -> "TaskEngineClient":
        return cls(
            settings.api_base_url,
            credentials,
            http_client=http_client,
            request_timeout=settings.request_timeout,
            connect_timeout=settings.connect_timeout,
        )

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        try:
            token = await self.credentials.get_token()
        except CredentialError as e:
            raise TaskEngineError(str(e)) from e

        headers = {
            "Authorization": f"Bearer {token}",
            "User-Agent": "governed-agent-client/1.0",
        }
        url = f"{self.base_url}{path}"

        try:
            response = await self.http_client.request(method, url, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "Task engine request failed",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise TaskEngineError(f"Request to {path} failed: {e}") from e

        if not response.is_success:
            message = _error_message(response)
            logger.warning(
                "Task engine returned an error",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                },
            )
            raise TaskEngineError(message, status_code=response.status_code)

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as e:
            raise TaskEngineError(f"Invalid JSON from {path}", status_code=response.status_code) from e
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get_task(self, task_id: str) -> GovernedTask:
        """Fetch the current task snapshot."""
        data = await self._request("GET", f"/governed-agent/{task_id}")
        if not isinstance(data, dict):
            raise TaskEngineError(f"Task {task_id} response did not contain a task record")
        try:
            return GovernedTask.model_validate(data)
        except ValidationError as e:
            raise TaskEngineError(f"Task {task_id} response is not a valid task record: {e}") from e

    async def approve(self, task_id: str) -> Any:
        return await self._request("POST", f"/chat/governed/{task_id}/approve", {})

    async def request_plan(self, task_id: str) -> Any:
        return await self._request("POST", f"/chat/governed/{task_id}/request-plan", {})

    async def request_changes(self, task_id: str, feedback: str) -> Any:
        return await self._request(
            "POST", f"/chat/governed/{task_id}/request-changes", {"feedback": feedback}
        )

    async def go_back(self, task_id: str) -> Any:
        return await self._request("POST", f"/chat/governed/{task_id}/go-back", {})

    async def navigate(self, task_id: str, mode: AgentMode) -> Any:
        return await self._request("POST", f"/chat/governed/{task_id}/navigate", {"mode": mode.value})

    async def submit_answers(self, task_id: str, answers: Dict[str, str]) -> Any:
        return await self._request(
            "POST", f"/chat/governed/{task_id}/submit-answers", {"answers": answers}
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
