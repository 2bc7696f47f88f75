"""Rich progress display for upload attempts.

Subscribes to a :class:`StatusBroadcaster` and renders two tiers:

* **Queue level** -- records finished out of records being drained
* **Record level** -- one bar per in-flight record, 0-100% through the stages
"""

from __future__ import annotations

from typing import Callable

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)

from formsync.models import PipelineStage, UploadProgress
from formsync.upload.broadcaster import StatusBroadcaster


class UploadProgressTracker:
    """Two-tier Rich progress tracker fed by the status broadcaster.

    Usage::

        tracker = UploadProgressTracker(broadcaster, total_records=3)
        with tracker:
            await coordinator.drain()
        print(tracker.stats)
    """

    def __init__(
        self,
        broadcaster: StatusBroadcaster,
        total_records: int,
        console: Console | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._total_records = total_records
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
            console=console,
        )
        self._queue_task: TaskID | None = None
        self._record_tasks: dict[str, TaskID] = {}
        self._unsubscribe: Callable[[], None] | None = None
        self._stats: dict[str, int] = {"succeeded": 0, "failed": 0}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the display and begin listening for progress events."""
        self._progress.start()
        self._queue_task = self._progress.add_task(
            "[green]Queue", total=self._total_records, status="starting..."
        )
        self._unsubscribe = self._broadcaster.subscribe(self.on_progress)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._progress.stop()

    def __enter__(self) -> UploadProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_progress(self, progress: UploadProgress) -> None:
        """Update the bars for one broadcaster event."""
        task = self._record_tasks.get(progress.record_id)
        if task is None:
            label = progress.record_id
            if progress.retry_count:
                label += f" (retry {progress.retry_count})"
            task = self._progress.add_task(f"[blue]{label}", total=100, status="")
            self._record_tasks[progress.record_id] = task

        if progress.stage == PipelineStage.ERROR:
            self._stats["failed"] += 1
            self._progress.update(
                task, completed=progress.percent, status=f"[red]FAIL[/red] {progress.error}"
            )
            self._finish(progress.record_id, f"[red]FAIL[/red] {progress.record_id}")
        elif progress.stage == PipelineStage.COMPLETED:
            self._stats["succeeded"] += 1
            self._progress.update(task, completed=100, status="done")
            self._finish(progress.record_id, progress.record_id)
        else:
            self._progress.update(task, completed=progress.percent, status=progress.current_step)

    def _finish(self, record_id: str, status: str) -> None:
        task = self._record_tasks.pop(record_id)
        self._progress.update(task, visible=False)
        if self._queue_task is not None:
            self._progress.advance(self._queue_task, 1)
            self._progress.update(self._queue_task, status=status)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the current statistics."""
        return dict(self._stats)
