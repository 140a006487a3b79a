"""
Push Channel Subscriber

Opens one subscription per task id, validates each named event and routes it:
task updates to the snapshot store and clarification gate, file-generation progress
to the progress tracker. Fatal channel conditions are recorded and reported once.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .clarification import ClarificationGate
from .errors import ChannelClosedError
from .event_channel import EventChannel, SubscriptionHandle
from .models import (
    CompleteEvent,
    ConnectedEvent,
    ErrorEvent,
    FileGenerationEvent,
    GovernedTask,
    HeartbeatEvent,
    StreamEvent,
    StreamEventType,
    TimeoutEvent,
    UpdateEvent,
    parse_stream_event,
    parse_update_leniently,
)
from .progress_tracker import FileGenerationTracker
from .snapshot_store import TaskSnapshotStore

logger = logging.getLogger(__name__)

UpdateListener = Callable[[UpdateEvent, GovernedTask], None]
FatalListener = Callable[[str], None]

CONNECTION_CLOSED_MESSAGE = "Connection closed by server"
UNKNOWN_ERROR_MESSAGE = "Unknown error occurred"


class PushChannelSubscriber:
    """Reconciles the task push channel into the local stores."""

    def __init__(
        self,
        task_id: str,
        channel: EventChannel,
        store: TaskSnapshotStore,
        tracker: FileGenerationTracker,
        gate: ClarificationGate,
    ):
        self.task_id = task_id
        self.channel = channel
        self.store = store
        self.tracker = tracker
        self.gate = gate

        self.live = False
        self.connected_at: Optional[str] = None
        self.last_heartbeat: Optional[str] = None
        self.stream_complete = False
        self.completion_status: Optional[str] = None
        self.fatal_error: Optional[str] = None
        self.timeouts = 0

        self._handle: Optional[SubscriptionHandle] = None
        self._close_issued = False
        self._update_listeners: List[UpdateListener] = []
        self._fatal_listeners: List[FatalListener] = []

    @property
    def subscribed(self) -> bool:
        return self._handle is not None and not self._close_issued

    def add_update_listener(self, listener: UpdateListener) -> None:
        self._update_listeners.append(listener)

    def add_fatal_listener(self, listener: FatalListener) -> None:
        self._fatal_listeners.append(listener)

    def start(self) -> None:
        """Open the subscription; a second call while open does nothing.

        Raises:
            ChannelClosedError: if the subscription was already closed; a closed
                channel is never reopened.
        """
        if self._close_issued:
            raise ChannelClosedError(self.fatal_error or CONNECTION_CLOSED_MESSAGE)
        if self._handle is not None:
            return
        logger.info("Subscribing to task stream", extra={"task_id": self.task_id})
        self._handle = self.channel.subscribe(self.task_id, self._on_raw_event, self._on_channel_closed)

    async def close(self) -> None:
        """Issue exactly one close for the open subscription."""
        if self._handle is None or self._close_issued:
            return
        self._close_issued = True
        self.live = False
        await self._handle.close()
        logger.info("Closed task stream", extra={"task_id": self.task_id})

    async def _on_raw_event(self, event_name: str, data: str) -> None:
        try:
            payload: Any = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(
                "Invalid JSON received on task stream",
                extra={"task_id": self.task_id, "event": event_name, "data": data[:100]},
            )
            return
        if not isinstance(payload, dict):
            logger.warning(
                "Non-object payload on task stream",
                extra={"task_id": self.task_id, "event": event_name},
            )
            return

        try:
            if event_name == StreamEventType.UPDATE.value:
                event: StreamEvent = self._parse_update(payload)
            else:
                event = parse_stream_event(event_name, payload)
        except ValidationError as e:
            logger.warning(
                "Discarding invalid stream event",
                extra={"task_id": self.task_id, "event": event_name, "error": str(e)},
            )
            return
        except ValueError:
            logger.debug(
                "Ignoring unknown stream event",
                extra={"task_id": self.task_id, "event": event_name},
            )
            return

        await self.handle_event(event)

    def _parse_update(self, payload: Dict[str, Any]) -> UpdateEvent:
        event, dropped = parse_update_leniently(payload)
        if dropped:
            logger.warning(
                "Skipping invalid update fields",
                extra={"task_id": self.task_id, "fields": dropped},
            )
        return event

    async def handle_event(self, event: StreamEvent) -> None:
        """Apply one typed push event."""
        if isinstance(event, UpdateEvent):
            self._handle_update(event)
        elif isinstance(event, FileGenerationEvent):
            self.tracker.apply(event)
        elif isinstance(event, ConnectedEvent):
            self.live = True
            self.connected_at = event.timestamp or datetime.now(timezone.utc).isoformat()
            logger.info(
                "Task stream connected",
                extra={"task_id": self.task_id, "timestamp": event.timestamp},
            )
        elif isinstance(event, HeartbeatEvent):
            self.live = True
            self.last_heartbeat = event.timestamp or datetime.now(timezone.utc).isoformat()
        elif isinstance(event, CompleteEvent):
            # Left open so results stay reviewable; no further progress is expected.
            self.stream_complete = True
            self.completion_status = event.status
            logger.info(
                "Task stream reported completion",
                extra={"task_id": self.task_id, "status": event.status},
            )
        elif isinstance(event, ErrorEvent):
            await self._handle_error(event)
        elif isinstance(event, TimeoutEvent):
            self.timeouts += 1
            logger.warning(
                "Task stream timeout",
                extra={"task_id": self.task_id, "error_message": event.message},
            )

    def _handle_update(self, event: UpdateEvent) -> None:
        task = self.store.apply_update(event)
        self.gate.sync_with_update(event.mode, event.scopeAnalysis)
        logger.info(
            "Task update received",
            extra={"task_id": self.task_id, "mode": event.mode.value, "status": event.status.value},
        )
        for listener in self._update_listeners:
            listener(event, task)

    async def _handle_error(self, event: ErrorEvent) -> None:
        message = event.message or UNKNOWN_ERROR_MESSAGE
        logger.error("Task stream error", extra={"task_id": self.task_id, "error_message": message})
        self._record_fatal(message)
        await self.close()

    async def _on_channel_closed(self, message: str, status_code: Optional[int]) -> None:
        if self._close_issued:
            return
        self._close_issued = True
        self._record_fatal(message or CONNECTION_CLOSED_MESSAGE)

    def _record_fatal(self, message: str) -> None:
        self.live = False
        if self.fatal_error is not None:
            return
        self.fatal_error = message
        for listener in self._fatal_listeners:
            listener(message)
