"""
File-Generation Progress Tracker

Merges the high-frequency ``file_generation`` sub-stream into an ordered list of
file entries. Slots are created as pending placeholders once the total file count is
known and are bound to a path by the first ``generating_file`` event that claims them.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .models import (
    FileGenerationEntry,
    FileGenerationEvent,
    FileGenerationPhase,
    FileStatus,
)

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = (FileStatus.COMPLETE, FileStatus.ERROR)


class FileGenerationTracker:
    """Owner of the ordered FileGenerationEntry list for one task."""

    def __init__(self, task_id: Optional[str] = None):
        self.task_id = task_id
        self._entries: List[FileGenerationEntry] = []
        self.latest: Optional[FileGenerationEvent] = None
        self.overflow_paths: List[str] = []

    @property
    def entries(self) -> List[FileGenerationEntry]:
        return [entry.model_copy() for entry in self._entries]

    @property
    def completed_count(self) -> int:
        return sum(1 for entry in self._entries if entry.status is FileStatus.COMPLETE)

    @property
    def active(self) -> bool:
        """True once any file generation progress has been received."""
        return self.latest is not None

    def reset(self) -> None:
        self._entries = []
        self.latest = None
        self.overflow_paths = []

    def apply(self, event: FileGenerationEvent) -> List[FileGenerationEntry]:
        """Merge one progress event and return the resulting entry list."""
        self.latest = event
        phase = event.phase

        if phase == FileGenerationPhase.STRUCTURE_COMPLETE.value:
            if event.totalFiles is not None:
                self._initialize(event.totalFiles)
        elif phase == FileGenerationPhase.GENERATING_FILE.value:
            if event.currentFile:
                self._start_file(event.currentFile)
        elif phase in (FileGenerationPhase.FILE_COMPLETE.value, FileGenerationPhase.FILE_COMMITTED.value):
            if event.file_identifier:
                self._finish_file(event, FileStatus.COMPLETE)
        elif phase == FileGenerationPhase.FILE_ERROR.value:
            self._finish_file(event, FileStatus.ERROR)

        return self.entries

    def _initialize(self, total_files: int) -> None:
        if total_files < 0:
            logger.warning(
                "Ignoring negative file count",
                extra={"task_id": self.task_id, "total_files": total_files},
            )
            return
        self._entries = [FileGenerationEntry() for _ in range(total_files)]
        self.overflow_paths = []

    def _find_by_path(self, path: Optional[str]) -> int:
        if not path:
            return -1
        for index, entry in enumerate(self._entries):
            if entry.path == path:
                return index
        return -1

    def _start_file(self, path: str) -> None:
        index = self._find_by_path(path)
        if index < 0:
            index = next(
                (i for i, entry in enumerate(self._entries) if entry.path == ""),
                -1,
            )

        if index < 0:
            # More files reported than announced by structure_complete.
            if path not in self.overflow_paths:
                self.overflow_paths.append(path)
            logger.warning(
                "No pending file slot for generated file",
                extra={
                    "task_id": self.task_id,
                    "path": path,
                    "total_slots": len(self._entries),
                },
            )
            return

        entry = self._entries[index]
        if entry.status in _TERMINAL_STATUSES:
            logger.debug(
                "Ignoring generating_file for finished file",
                extra={"task_id": self.task_id, "path": path, "status": entry.status.value},
            )
            return

        self._entries[index] = FileGenerationEntry(path=path, status=FileStatus.GENERATING)

    def _finish_file(self, event: FileGenerationEvent, status: FileStatus) -> None:
        index = self._find_by_path(event.currentFile)
        if index < 0:
            index = self._find_by_path(event.file)
        if index < 0:
            logger.debug(
                "File event for unknown path",
                extra={"task_id": self.task_id, "phase": event.phase, "path": event.file_identifier},
            )
            return

        entry = self._entries[index]
        if entry.status in _TERMINAL_STATUSES:
            return

        if status is FileStatus.COMPLETE:
            updates = {"status": FileStatus.COMPLETE}
            if event.githubUrl:
                updates["remoteUrl"] = event.githubUrl
        else:
            updates = {"status": FileStatus.ERROR, "error": event.error}
        self._entries[index] = entry.model_copy(update=updates)
