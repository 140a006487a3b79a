import logging

import pytest

from governed_agent.models import FileGenerationEvent, FileStatus
from governed_agent.progress_tracker import FileGenerationTracker


def _event(phase: str, **fields) -> FileGenerationEvent:
    return FileGenerationEvent(phase=phase, **fields)


@pytest.fixture
def tracker():
    return FileGenerationTracker("task-1")


class TestFileGenerationTracker:
    def test_structure_then_files(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=3))
        tracker.apply(_event("generating_file", currentFile="a.ts"))
        tracker.apply(_event("file_complete", currentFile="a.ts", githubUrl="u"))
        entries = tracker.apply(_event("generating_file", currentFile="b.ts"))

        assert len(entries) == 3
        assert entries[0].path == "a.ts"
        assert entries[0].status is FileStatus.COMPLETE
        assert entries[0].remoteUrl == "u"
        assert entries[1].path == "b.ts"
        assert entries[1].status is FileStatus.GENERATING
        assert entries[2].path == ""
        assert entries[2].status is FileStatus.PENDING
        assert tracker.completed_count == 1

    def test_structure_complete_reinitializes(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=2))
        tracker.apply(_event("generating_file", currentFile="a.ts"))

        entries = tracker.apply(_event("structure_complete", totalFiles=4))

        assert len(entries) == 4
        assert all(entry.status is FileStatus.PENDING and entry.path == "" for entry in entries)

    def test_generating_same_file_twice_keeps_one_slot(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=2))
        tracker.apply(_event("generating_file", currentFile="a.ts"))
        entries = tracker.apply(_event("generating_file", currentFile="a.ts"))

        assert [entry.path for entry in entries] == ["a.ts", ""]

    def test_file_committed_matches_by_file_field(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=1))
        tracker.apply(_event("generating_file", currentFile="src/app.ts"))

        entries = tracker.apply(_event("file_committed", file="src/app.ts", githubUrl="https://example.com/app.ts"))

        assert entries[0].status is FileStatus.COMPLETE
        assert entries[0].remoteUrl == "https://example.com/app.ts"

    def test_file_error(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=1))
        tracker.apply(_event("generating_file", currentFile="a.ts"))

        entries = tracker.apply(_event("file_error", currentFile="a.ts", error="rate limited"))

        assert entries[0].status is FileStatus.ERROR
        assert entries[0].error == "rate limited"

    def test_finished_files_never_move_backward(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=1))
        tracker.apply(_event("generating_file", currentFile="a.ts"))
        tracker.apply(_event("file_complete", currentFile="a.ts"))

        tracker.apply(_event("generating_file", currentFile="a.ts"))
        entries = tracker.apply(_event("file_error", currentFile="a.ts", error="late"))

        assert entries[0].status is FileStatus.COMPLETE
        assert entries[0].error is None

    def test_overflow_files_are_flagged(self, tracker, caplog):
        tracker.apply(_event("structure_complete", totalFiles=1))
        tracker.apply(_event("generating_file", currentFile="a.ts"))

        with caplog.at_level(logging.WARNING, logger="governed_agent.progress_tracker"):
            entries = tracker.apply(_event("generating_file", currentFile="b.ts"))

        assert [entry.path for entry in entries] == ["a.ts"]
        assert tracker.overflow_paths == ["b.ts"]
        assert "No pending file slot" in caplog.text

    def test_completion_for_unknown_file_is_ignored(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=1))

        entries = tracker.apply(_event("file_complete", currentFile="ghost.ts"))

        assert entries[0].status is FileStatus.PENDING

    def test_latest_event_is_kept(self, tracker):
        assert not tracker.active
        tracker.apply(_event("planning", message="Planning repository layout"))
        tracker.apply(_event("complete", completedFiles=3, totalFiles=3))

        assert tracker.active
        assert tracker.latest.phase == "complete"
        assert tracker.entries == []

    def test_entries_are_copies(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=1))
        tracker.entries[0].path = "mutated.ts"
        assert tracker.entries[0].path == ""

    def test_reset(self, tracker):
        tracker.apply(_event("structure_complete", totalFiles=2))
        tracker.reset()
        assert tracker.entries == []
        assert tracker.latest is None
