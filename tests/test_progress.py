"""Tests for the Rich upload progress tracker."""

from __future__ import annotations

import io

from rich.console import Console

from formsync.models import PipelineStage, UploadProgress
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.progress import UploadProgressTracker


def _console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=120)


def test_counts_completed_and_failed_records() -> None:
    broadcaster = StatusBroadcaster()
    tracker = UploadProgressTracker(broadcaster, total_records=2, console=_console())

    with tracker:
        broadcaster.publish(
            UploadProgress("form-a", PipelineStage.UPLOADING_PDF, 20, "Uploading PDF...")
        )
        broadcaster.publish(UploadProgress("form-a", PipelineStage.COMPLETED, 100, "Done"))
        broadcaster.publish(
            UploadProgress(
                "form-b", PipelineStage.ERROR, 50, "Failed", retry_count=1, error="down"
            )
        )

    assert tracker.stats == {"succeeded": 1, "failed": 1}


def test_stop_unsubscribes() -> None:
    broadcaster = StatusBroadcaster()
    tracker = UploadProgressTracker(broadcaster, total_records=1, console=_console())

    tracker.start()
    assert broadcaster.subscriber_count == 1
    tracker.stop()

    assert broadcaster.subscriber_count == 0
    broadcaster.publish(UploadProgress("form-a", PipelineStage.COMPLETED, 100, "Done"))
    assert tracker.stats == {"succeeded": 0, "failed": 0}
