"""
Command Dispatcher

Issues user commands against the task engine. Commands are fire-and-forget: a
successful call changes nothing locally, the resulting state arrives later as a push
``update``. A single pending-action slot keeps at most one command in flight per task
and is released by that next update, or immediately when the call fails.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional

from .api_client import TaskEngineClient
from .clarification import ClarificationGate
from .errors import ErrorKind, ErrorRecord, StaleModeError, TaskEngineError
from .models import MODE_ORDER, AgentMode, GovernedTask, UpdateEvent
from .snapshot_store import TaskSnapshotStore

logger = logging.getLogger(__name__)

ErrorListener = Callable[[ErrorRecord], None]


class PendingAction(str, Enum):
    """Tag identifying the command currently in flight."""

    APPROVING = "approving"
    GENERATING_PLAN = "generating_plan"
    REQUESTING_CHANGES = "requesting_changes"
    GOING_BACK = "going_back"
    NAVIGATING = "navigating"
    SUBMITTING_ANSWERS = "submitting_answers"

    @property
    def message(self) -> str:
        return _PENDING_MESSAGES.get(self, "Processing...")


_PENDING_MESSAGES: Dict[PendingAction, str] = {
    PendingAction.APPROVING: "Approving and starting execution...",
    PendingAction.GENERATING_PLAN: "Generating execution plan...",
    PendingAction.REQUESTING_CHANGES: "Requesting plan modifications...",
    PendingAction.GOING_BACK: "Navigating back...",
    PendingAction.NAVIGATING: "Switching mode...",
    PendingAction.SUBMITTING_ANSWERS: "Submitting answers...",
}

_FAILURE_MESSAGES: Dict[str, str] = {
    "approve": "Failed to approve and execute plan",
    "request_plan": "Failed to request plan generation",
    "request_changes": "Failed to request plan changes",
    "go_back": "Failed to go back",
    "navigate": "Failed to navigate to mode",
    "submit_answers": "Failed to submit answers",
}

# Modes in which each command is meaningful.
COMMAND_MODES: Dict[str, FrozenSet[AgentMode]] = {
    "approve": frozenset({AgentMode.PLAN}),
    "request_plan": frozenset({AgentMode.SCOPE, AgentMode.CLARIFY}),
    "request_changes": frozenset({AgentMode.PLAN}),
    "go_back": frozenset(MODE_ORDER[1:]),
    "navigate": frozenset(MODE_ORDER),
    "submit_answers": frozenset({AgentMode.SCOPE, AgentMode.CLARIFY}),
}


class CommandDispatcher:
    """Issues commands for one task behind the pending-action guard."""

    def __init__(
        self,
        task_id: str,
        client: TaskEngineClient,
        store: TaskSnapshotStore,
        gate: ClarificationGate,
        on_error: Optional[ErrorListener] = None,
    ):
        self.task_id = task_id
        self.client = client
        self.store = store
        self.gate = gate
        self._on_error = on_error
        self._pending: Optional[PendingAction] = None
        self._discard_results = False

    @property
    def pending_action(self) -> Optional[PendingAction]:
        return self._pending

    @property
    def busy(self) -> bool:
        return self._pending is not None

    def on_update(self, event: UpdateEvent, task: GovernedTask) -> None:
        """Release the guard: the state change a command waited for has arrived."""
        if self._pending is not None:
            logger.debug(
                "Pending action released by update",
                extra={"task_id": self.task_id, "pending_action": self._pending.value, "mode": event.mode.value},
            )
        self._pending = None

    def discard_results(self) -> None:
        """Ignore the outcome of calls still in flight (teardown)."""
        self._discard_results = True

    def _check_mode(self, command: str, from_mode: Optional[AgentMode]) -> AgentMode:
        current = self.store.mode
        allowed = COMMAND_MODES[command]
        if current is None:
            raise StaleModeError(command, None, "a loaded task")
        if from_mode is not None and from_mode is not current:
            raise StaleModeError(command, current, from_mode.value)
        if current not in allowed:
            expected = ", ".join(mode.value for mode in MODE_ORDER if mode in allowed)
            raise StaleModeError(command, current, expected)
        return current

    async def _dispatch(
        self,
        command: str,
        action: PendingAction,
        call: Callable[[], Awaitable[Any]],
        from_mode: Optional[AgentMode],
        precheck: Optional[Callable[[AgentMode], bool]] = None,
    ) -> bool:
        if self._pending is not None:
            logger.info(
                "Command rejected while another is pending",
                extra={"task_id": self.task_id, "command": command, "pending_action": self._pending.value},
            )
            return False

        current = self._check_mode(command, from_mode)
        if precheck is not None and not precheck(current):
            return False

        self._pending = action
        logger.info("Dispatching command", extra={"task_id": self.task_id, "command": command})
        try:
            await call()
        except TaskEngineError as e:
            if self._discard_results:
                return False
            self._pending = None
            record = ErrorRecord(
                kind=ErrorKind.COMMAND,
                message=e.message or _FAILURE_MESSAGES[command],
                command=command,
                status_code=e.status_code,
            )
            logger.warning(
                "Command failed",
                extra={"task_id": self.task_id, "command": command, "error": record.message},
            )
            if self._on_error:
                self._on_error(record)
            return False
        except Exception:
            if self._discard_results:
                return False
            self._pending = None
            logger.exception(
                "Command failed unexpectedly",
                extra={"task_id": self.task_id, "command": command},
            )
            if self._on_error:
                self._on_error(
                    ErrorRecord(kind=ErrorKind.COMMAND, message=_FAILURE_MESSAGES[command], command=command)
                )
            return False

        if self._discard_results:
            return False
        return True

    async def approve(self, from_mode: Optional[AgentMode] = None) -> bool:
        """Approve the current plan; the task moves to BUILD via the push channel."""
        return await self._dispatch(
            "approve", PendingAction.APPROVING, lambda: self.client.approve(self.task_id), from_mode
        )

    async def request_plan(self, from_mode: Optional[AgentMode] = None) -> bool:
        return await self._dispatch(
            "request_plan",
            PendingAction.GENERATING_PLAN,
            lambda: self.client.request_plan(self.task_id),
            from_mode,
        )

    async def request_changes(self, feedback: str, from_mode: Optional[AgentMode] = None) -> bool:
        return await self._dispatch(
            "request_changes",
            PendingAction.REQUESTING_CHANGES,
            lambda: self.client.request_changes(self.task_id, feedback),
            from_mode,
        )

    async def go_back(self, from_mode: Optional[AgentMode] = None) -> bool:
        return await self._dispatch(
            "go_back", PendingAction.GOING_BACK, lambda: self.client.go_back(self.task_id), from_mode
        )

    async def navigate(self, target: AgentMode, from_mode: Optional[AgentMode] = None) -> bool:
        """Jump to an unlocked mode.

        Targets later than the current mode are refused without a call. Navigating
        to the current mode is permitted and needs no call either.
        """

        def unlocked(current: AgentMode) -> bool:
            if not target.is_unlocked_from(current):
                logger.info(
                    "Navigation to locked mode refused",
                    extra={"task_id": self.task_id, "current_mode": current.value, "target_mode": target.value},
                )
                return False
            return True

        if self._pending is None and self.store.mode is target and from_mode in (None, target):
            return True

        return await self._dispatch(
            "navigate",
            PendingAction.NAVIGATING,
            lambda: self.client.navigate(self.task_id, target),
            from_mode,
            precheck=unlocked,
        )

    async def submit_answers(
        self,
        answers: Optional[Dict[str, str]] = None,
        from_mode: Optional[AgentMode] = None,
    ) -> bool:
        """Submit clarification answers once every question has one.

        ``answers`` are recorded on the gate once the command is accepted, so a call
        rejected as busy or stale leaves the gate untouched. Answers to questions
        that are not being asked are ignored. Returns False without a call while
        incomplete.
        """

        def record_and_check(current: AgentMode) -> bool:
            for question, answer in (answers or {}).items():
                if question in self.gate.questions:
                    self.gate.set_answer(question, answer)
                else:
                    logger.debug(
                        "Ignoring answer to unknown question",
                        extra={"task_id": self.task_id, "question": question},
                    )
            return self.gate.can_submit

        async def call() -> Any:
            recorded = self.gate.answers
            return await self.client.submit_answers(
                self.task_id, {q: recorded[q] for q in self.gate.questions}
            )

        submitted = await self._dispatch(
            "submit_answers", PendingAction.SUBMITTING_ANSWERS, call, from_mode, precheck=record_and_check
        )
        if submitted:
            self.gate.deactivate()
        return submitted
