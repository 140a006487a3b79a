"""Shared fakes for the governed agent client tests."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from governed_agent.api_client import TaskEngineClient
from governed_agent.event_channel import ChannelState
from governed_agent.models import GovernedTask


class FakeSubscription:
    """Subscription handle that only counts close calls."""

    def __init__(self) -> None:
        self.state = ChannelState.OPEN
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        self.state = ChannelState.CLOSED


class FakeChannel:
    """In-memory event channel; tests push events through emit()."""

    def __init__(self) -> None:
        self.subscriptions: List[FakeSubscription] = []
        self.task_ids: List[str] = []
        self._on_event = None
        self._on_closed = None

    def subscribe(self, task_id, on_event, on_closed) -> FakeSubscription:
        self.task_ids.append(task_id)
        self._on_event = on_event
        self._on_closed = on_closed
        subscription = FakeSubscription()
        self.subscriptions.append(subscription)
        return subscription

    @property
    def subscription(self) -> FakeSubscription:
        return self.subscriptions[-1]

    async def emit(self, event_name: str, payload: Any) -> None:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        await self._on_event(event_name, data)

    async def drop(self, message: str = "Connection closed by server", status_code: Optional[int] = None) -> None:
        await self._on_closed(message, status_code)


def make_task(**overrides: Any) -> GovernedTask:
    payload: Dict[str, Any] = {
        "id": "task-1",
        "mode": "SCOPE",
        "status": "in_progress",
        "request": "Build a landing page for the spring campaign",
    }
    payload.update(overrides)
    return GovernedTask.model_validate(payload)


@pytest.fixture
def task_factory() -> Callable[..., GovernedTask]:
    return make_task


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def mock_client() -> AsyncMock:
    client = AsyncMock(spec=TaskEngineClient)
    client.get_task.return_value = make_task()
    return client
