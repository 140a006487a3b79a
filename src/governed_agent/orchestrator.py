"""
Governed Task Orchestrator

Wires the snapshot store, push channel subscriber, command dispatcher, file-generation
tracker and clarification gate for one task, and exposes the single external surface:
start/stop the subscription, dispatch commands, read the current view. The
orchestrator reads component state but never mutates the task itself.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .api_client import TaskEngineClient
from .clarification import ClarificationGate
from .credentials import CredentialProvider, credential_provider_from_settings
from .dispatcher import CommandDispatcher, PendingAction
from .errors import ErrorKind, ErrorRecord, TaskEngineError
from .event_channel import EventChannel, SSEEventChannel
from .models import (
    AgentMode,
    FileGenerationEntry,
    FileGenerationEvent,
    GovernedTask,
    UpdateEvent,
)
from .progress_tracker import FileGenerationTracker
from .settings import Settings, get_settings
from .snapshot_store import TaskSnapshotStore
from .subscriber import PushChannelSubscriber

logger = logging.getLogger(__name__)

LOAD_FAILED_MESSAGE = "Failed to load task"


@dataclass
class TaskView:
    """Read-only picture of one task as the user should see it."""

    task_id: str
    task: Optional[GovernedTask]
    mode: Optional[AgentMode]
    stage: Optional[AgentMode]
    loading: bool
    live: bool
    stream_complete: bool
    pending_action: Optional[PendingAction]
    error: Optional[ErrorRecord]
    questions: List[str] = field(default_factory=list)
    answers: Dict[str, str] = field(default_factory=dict)
    can_submit: bool = False
    files: List[FileGenerationEntry] = field(default_factory=list)
    file_progress: Optional[FileGenerationEvent] = None
    overflow_files: List[str] = field(default_factory=list)

    @property
    def clarifying(self) -> bool:
        return len(self.questions) > 0

    @property
    def unlocked_modes(self) -> List[AgentMode]:
        if self.mode is None:
            return []
        return [mode for mode in AgentMode if mode.is_unlocked_from(self.mode)]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "taskId": self.task_id,
            "task": self.task.model_dump(mode="json", exclude_none=True) if self.task else None,
            "mode": self.mode.value if self.mode else None,
            "stage": self.stage.value if self.stage else None,
            "unlockedModes": [mode.value for mode in self.unlocked_modes],
            "loading": self.loading,
            "live": self.live,
            "streamComplete": self.stream_complete,
            "pendingAction": self.pending_action.value if self.pending_action else None,
            "pendingMessage": self.pending_action.message if self.pending_action else None,
            "error": self.error.to_dict() if self.error else None,
            "clarification": {
                "questions": self.questions,
                "answers": self.answers,
                "canSubmit": self.can_submit,
            } if self.clarifying else None,
            "files": [entry.model_dump(mode="json", exclude_none=True) for entry in self.files],
            "fileProgress": (
                self.file_progress.model_dump(mode="json", exclude_none=True, exclude={"kind"})
                if self.file_progress
                else None
            ),
            "overflowFiles": self.overflow_files,
        }


class GovernedTaskOrchestrator:
    """Coordinates the client-side view of one governed task."""

    def __init__(
        self,
        task_id: str,
        client: TaskEngineClient,
        channel: EventChannel,
    ):
        self.task_id = task_id
        self.client = client
        self.channel = channel

        self.store = TaskSnapshotStore(task_id)
        self.tracker = FileGenerationTracker(task_id)
        self.gate = ClarificationGate()
        self.subscriber = PushChannelSubscriber(task_id, channel, self.store, self.tracker, self.gate)
        self.dispatcher = CommandDispatcher(task_id, client, self.store, self.gate, on_error=self._record_error)

        self.subscriber.add_update_listener(self._on_update)
        self.subscriber.add_fatal_listener(self._on_channel_fatal)

        self._error: Optional[ErrorRecord] = None
        self._started = False
        self._closed = False
        self._cleanup: List[Callable[[], Awaitable[None]]] = []

    @classmethod
    def from_settings(
        cls,
        task_id: str,
        settings: Optional[Settings] = None,
        credentials: Optional[CredentialProvider] = None,
    ) -> "GovernedTaskOrchestrator":
        """Build an orchestrator that owns its own HTTP client and event channel."""
        settings = settings or get_settings()
        credentials = credentials or credential_provider_from_settings(settings)
        client = TaskEngineClient.from_settings(settings, credentials)
        channel = SSEEventChannel(
            settings.api_base_url,
            credentials,
            settings.stream,
            connect_timeout=settings.connect_timeout,
        )
        orchestrator = cls(task_id, client, channel)
        orchestrator._cleanup.extend([client.aclose, channel.aclose])
        return orchestrator

    # ----- lifecycle -----

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Load the snapshot and open the push subscription (once)."""
        if self._started or self._closed:
            return
        self._started = True
        await self.refresh()
        if not self._closed:
            self.subscriber.start()

    async def refresh(self) -> Optional[GovernedTask]:
        """Re-fetch the snapshot; used for initial load and explicit refresh only."""
        try:
            task = await self.client.get_task(self.task_id)
        except TaskEngineError as e:
            if self._closed:
                return None
            logger.error(
                "Failed to load task",
                extra={"task_id": self.task_id, "error": e.message, "status_code": e.status_code},
            )
            self._record_error(
                ErrorRecord(
                    kind=ErrorKind.LOAD,
                    message=e.message or LOAD_FAILED_MESSAGE,
                    status_code=e.status_code,
                )
            )
            return None

        if self._closed:
            return None
        self.store.load(task)
        self.gate.sync_with_snapshot(task)
        if self._error is not None and self._error.kind is ErrorKind.LOAD:
            self._error = None
        return task

    async def close(self) -> None:
        """Tear down: close the subscription once and discard in-flight results."""
        if self._closed:
            return
        self._closed = True
        self.dispatcher.discard_results()
        await self.subscriber.close()
        for cleanup in self._cleanup:
            await cleanup()
        logger.info("Orchestrator closed", extra={"task_id": self.task_id})

    # ----- reads -----

    @property
    def error(self) -> Optional[ErrorRecord]:
        return self._error

    @property
    def mode(self) -> Optional[AgentMode]:
        return self.store.mode

    @property
    def stage(self) -> Optional[AgentMode]:
        """The visible stage; an active clarification hides the rest of the lifecycle."""
        if self.gate.active:
            return AgentMode.CLARIFY
        return self.store.mode

    @property
    def loading(self) -> bool:
        return (
            self.store.task is None
            and self.subscriber.connected_at is None
            and self._error is None
        )

    @property
    def view(self) -> TaskView:
        return TaskView(
            task_id=self.task_id,
            task=self.store.task,
            mode=self.store.mode,
            stage=self.stage,
            loading=self.loading,
            live=self.subscriber.live,
            stream_complete=self.subscriber.stream_complete,
            pending_action=self.dispatcher.pending_action,
            error=self._error,
            questions=self.gate.questions,
            answers=self.gate.answers,
            can_submit=self.gate.can_submit,
            files=self.tracker.entries,
            file_progress=self.tracker.latest,
            overflow_files=list(self.tracker.overflow_paths),
        )

    # ----- commands -----

    async def approve(self, from_mode: Optional[AgentMode] = None) -> bool:
        if self._closed:
            return False
        return await self.dispatcher.approve(from_mode)

    async def request_plan(self, from_mode: Optional[AgentMode] = None) -> bool:
        if self._closed:
            return False
        return await self.dispatcher.request_plan(from_mode)

    async def request_changes(self, feedback: str, from_mode: Optional[AgentMode] = None) -> bool:
        if self._closed:
            return False
        return await self.dispatcher.request_changes(feedback, from_mode)

    async def go_back(self, from_mode: Optional[AgentMode] = None) -> bool:
        if self._closed:
            return False
        return await self.dispatcher.go_back(from_mode)

    async def navigate(self, target: AgentMode, from_mode: Optional[AgentMode] = None) -> bool:
        if self._closed:
            return False
        return await self.dispatcher.navigate(target, from_mode)

    async def submit_answers(
        self,
        answers: Optional[Dict[str, str]] = None,
        from_mode: Optional[AgentMode] = None,
    ) -> bool:
        if self._closed:
            return False
        return await self.dispatcher.submit_answers(answers, from_mode)

    def set_answer(self, question: str, answer: str) -> None:
        self.gate.set_answer(question, answer)

    def dismiss_error(self) -> bool:
        """Clear a dismissable (command) error."""
        if self._error is None or not self._error.dismissable:
            return False
        self._error = None
        return True

    # ----- listeners -----

    def _on_update(self, event: UpdateEvent, task: GovernedTask) -> None:
        self.dispatcher.on_update(event, task)

    def _on_channel_fatal(self, message: str) -> None:
        self._record_error(ErrorRecord(kind=ErrorKind.CHANNEL, message=message))

    def _record_error(self, record: ErrorRecord) -> None:
        # A dead channel stays visible over later, lesser errors.
        if self._error is not None and self._error.kind is ErrorKind.CHANNEL:
            return
        self._error = record


OrchestratorFactory = Callable[[str], GovernedTaskOrchestrator]


class OrchestratorRegistry:
    """Keeps at most one running orchestrator per task id."""

    def __init__(self, factory: OrchestratorFactory):
        self._factory = factory
        self._orchestrators: Dict[str, GovernedTaskOrchestrator] = {}
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        """Get or create the asyncio lock for thread-safe operations."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def get(self, task_id: str) -> Optional[GovernedTaskOrchestrator]:
        return self._orchestrators.get(task_id)

    def task_ids(self) -> List[str]:
        return list(self._orchestrators.keys())

    async def watch(self, task_id: str) -> GovernedTaskOrchestrator:
        """Return the running orchestrator for a task, starting one if needed."""
        async with self.lock:
            orchestrator = self._orchestrators.get(task_id)
            if orchestrator is None or orchestrator.closed:
                orchestrator = self._factory(task_id)
                self._orchestrators[task_id] = orchestrator
        await orchestrator.start()
        return orchestrator

    async def stop(self, task_id: str) -> bool:
        async with self.lock:
            orchestrator = self._orchestrators.pop(task_id, None)
        if orchestrator is None:
            return False
        await orchestrator.close()
        return True

    async def close(self) -> None:
        async with self.lock:
            orchestrators = list(self._orchestrators.values())
            self._orchestrators.clear()
        for orchestrator in orchestrators:
            await orchestrator.close()
        if orchestrators:
            logger.info("Closed task orchestrators", extra={"count": len(orchestrators)})
