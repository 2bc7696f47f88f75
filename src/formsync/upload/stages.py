"""Named pipeline stages and their share of the progress bar.

Each stage declares the percent range it covers, so mapping a stage (and
optional in-stage fraction) to an overall percent is a table lookup rather
than inline arithmetic at every call site.
"""

from __future__ import annotations

from dataclasses import dataclass

from formsync.models import PipelineStage, UploadProgress
from formsync.upload.broadcaster import StatusBroadcaster


@dataclass(frozen=True)
class StageSpec:
    """One ordered pipeline stage and the percent range it spans."""

    stage: PipelineStage
    start: float
    end: float
    description: str


STAGES: tuple[StageSpec, ...] = (
    StageSpec(PipelineStage.UPLOADING_PDF, 5.0, 45.0, "Uploading PDF..."),
    StageSpec(PipelineStage.UPLOADING_THUMBNAILS, 50.0, 80.0, "Uploading thumbnails..."),
    StageSpec(PipelineStage.SAVING_TO_FIRESTORE, 85.0, 85.0, "Saving form data..."),
    StageSpec(PipelineStage.SAVING_FIELDS, 90.0, 99.0, "Saving form fields..."),
    StageSpec(PipelineStage.COMPLETED, 100.0, 100.0, "Upload complete!"),
)

_BY_STAGE: dict[PipelineStage, StageSpec] = {spec.stage: spec for spec in STAGES}


def stage_spec(stage: PipelineStage) -> StageSpec:
    """Return the table entry for *stage*.

    Raises:
        KeyError: For stages outside the ordered pipeline (pending, error).
    """
    return _BY_STAGE[stage]


def percent_for(stage: PipelineStage, fraction: float = 0.0) -> float:
    """Overall percent for a position *fraction* (0..1) inside *stage*."""
    spec = _BY_STAGE[stage]
    fraction = min(max(fraction, 0.0), 1.0)
    return spec.start + (spec.end - spec.start) * fraction


class ProgressReporter:
    """Per-attempt progress emitter.

    Publishes :class:`UploadProgress` events to a broadcaster and clamps the
    reported percent so it never decreases within one attempt (blob uploads
    for each language variant restart their own progress at zero).
    """

    def __init__(
        self,
        record_id: str,
        broadcaster: StatusBroadcaster,
        retry_count: int = 0,
    ) -> None:
        self.record_id = record_id
        self._broadcaster = broadcaster
        self._retry_count = retry_count
        self._stage = PipelineStage.PENDING
        self._percent = 0.0
        self.last: UploadProgress | None = None

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def percent(self) -> float:
        return self._percent

    def enter(self, stage: PipelineStage, step: str | None = None) -> None:
        """Announce the start of *stage*."""
        self._stage = stage
        self._emit(percent_for(stage, 0.0), step or stage_spec(stage).description)

    def advance(self, fraction: float, step: str | None = None) -> None:
        """Report progress *fraction* (0..1) within the current stage."""
        self._emit(
            percent_for(self._stage, fraction),
            step or stage_spec(self._stage).description,
        )

    def fail(self, message: str) -> None:
        """Report a failed attempt; the percent stays where it got to."""
        self._stage = PipelineStage.ERROR
        self._emit(self._percent, "Upload failed", error=message)

    def _emit(self, percent: float, step: str, error: str | None = None) -> None:
        self._percent = max(self._percent, percent)
        self.last = UploadProgress(
            record_id=self.record_id,
            stage=self._stage,
            percent=self._percent,
            current_step=step,
            retry_count=self._retry_count,
            error=error,
        )
        self._broadcaster.publish(self.last)
