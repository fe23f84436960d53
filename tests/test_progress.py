"""Tests for the Rich upload progress tracker."""

from __future__ import annotations

from drivelib.models import TransferStatus
from drivelib.upload.progress import UploadProgressTracker, _truncate


class TestUploadProgressTracker:
    def test_bytes_and_status(self):
        tracker = UploadProgressTracker()
        task = tracker.add_file("report.bin", 1000)

        tracker.progress_callback(task)(400, 1000)
        tracker.status_callback(task)(TransferStatus.TRANSMITTING)

        state = tracker._progress.tasks[0]
        assert state.completed == 400
        assert state.total == 1000
        assert state.fields["status"] == "uploading"

    def test_counts_retries(self):
        tracker = UploadProgressTracker()
        task = tracker.add_file("report.bin", 1000)
        for status in [
            TransferStatus.PROBING,
            TransferStatus.TRANSMITTING,
            TransferStatus.PROBING,
            TransferStatus.TRANSMITTING,
            TransferStatus.PROBING,
        ]:
            tracker.update_status(task, status)

        assert tracker.retries(task) == 2
        assert "retry 2" in tracker._progress.tasks[0].fields["status"]

        tracker.update_status(task, TransferStatus.COMPLETED)
        assert "retry" not in tracker._progress.tasks[0].fields["status"]

    def test_context_manager(self):
        with UploadProgressTracker() as tracker:
            task = tracker.add_file("a", 1)
            tracker.update_bytes(task, 1, 1)
        assert tracker._progress.finished


def test_truncate_keeps_extension():
    name = "a" * 60 + ".pdf"
    short = _truncate(name)
    assert len(short) == 40
    assert short.endswith(".pdf")
    assert _truncate("short.txt") == "short.txt"
