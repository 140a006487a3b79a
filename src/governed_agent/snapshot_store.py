"""
Task Snapshot Store

Holds the single current GovernedTask for one task id. Every mutation produces a new
immutable snapshot; nothing else keeps a copy of the task.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .models import (
    ExecutionProgress,
    FailedStep,
    GovernedTask,
    UpdateEvent,
)

logger = logging.getLogger(__name__)

# Optional fields an update may carry; absent or null leaves the current value.
MERGEABLE_FIELDS = (
    "classification",
    "scopeAnalysis",
    "plan",
    "executionProgress",
    "verification",
    "error",
)


def merge_execution_progress(
    current: Optional[ExecutionProgress],
    incoming: ExecutionProgress,
) -> ExecutionProgress:
    """Merge progress so completed and failed steps never shrink within one run.

    A run is identified by ``startTime``; a different start time starts a new run and
    the incoming progress replaces the old one wholesale.
    """
    if current is None or current.startTime != incoming.startTime:
        return incoming

    completed: List[str] = list(current.completedSteps)
    for step_id in incoming.completedSteps:
        if step_id not in completed:
            completed.append(step_id)

    failed: List[FailedStep] = list(current.failedSteps)
    seen_failures = {(f.stepId, f.timestamp) for f in failed}
    for failure in incoming.failedSteps:
        if (failure.stepId, failure.timestamp) not in seen_failures:
            failed.append(failure)
            seen_failures.add((failure.stepId, failure.timestamp))

    if len(completed) != len(incoming.completedSteps) or len(failed) != len(incoming.failedSteps):
        logger.debug(
            "Kept steps missing from incoming progress",
            extra={
                "completed_steps": len(completed),
                "incoming_completed_steps": len(incoming.completedSteps),
            },
        )

    return incoming.model_copy(update={"completedSteps": completed, "failedSteps": failed})


class TaskSnapshotStore:
    """Owner of the current GovernedTask value."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self._task: Optional[GovernedTask] = None
        self._version = 0

    @property
    def task(self) -> Optional[GovernedTask]:
        return self._task

    @property
    def version(self) -> int:
        """Incremented on every snapshot replacement."""
        return self._version

    @property
    def mode(self):
        return self._task.mode if self._task else None

    def load(self, task: GovernedTask) -> GovernedTask:
        """Replace the snapshot wholesale with a freshly fetched task record."""
        if task.id != self.task_id:
            logger.warning(
                "Loaded task id does not match store",
                extra={"task_id": self.task_id, "loaded_task_id": task.id},
            )
        self._replace(task)
        return task

    def apply_update(self, event: UpdateEvent) -> GovernedTask:
        """Apply an ``update`` event as one atomic snapshot replacement.

        ``mode`` and ``status`` are taken from the event unconditionally; the optional
        fields replace the current values only when present. Applying the same event
        twice yields the same snapshot.
        """
        current = self._task
        if current is None:
            logger.debug(
                "Update received before snapshot load; seeding task",
                extra={"task_id": self.task_id},
            )
            current = GovernedTask(id=self.task_id)

        if not current.status.can_transition_to(event.status):
            logger.warning(
                "Non-monotonic task status transition applied",
                extra={
                    "task_id": self.task_id,
                    "old_status": current.status.value,
                    "new_status": event.status.value,
                },
            )

        changes: Dict[str, Any] = {"mode": event.mode, "status": event.status}
        for field_name in MERGEABLE_FIELDS:
            value = getattr(event, field_name)
            if value is None:
                continue
            if field_name == "executionProgress":
                value = merge_execution_progress(current.executionProgress, value)
            changes[field_name] = value

        updated = current.model_copy(update=changes)
        self._replace(updated)

        logger.debug(
            "Applied task update",
            extra={
                "task_id": self.task_id,
                "mode": event.mode.value,
                "status": event.status.value,
                "fields": sorted(changes.keys()),
            },
        )
        return updated

    def clear(self) -> None:
        self._task = None
        self._version += 1

    def _replace(self, task: GovernedTask) -> None:
        self._task = task
        self._version += 1

    @property
    def is_terminal(self) -> bool:
        return bool(self._task and self._task.status.is_terminal)
