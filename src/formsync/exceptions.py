"""Exception hierarchy for the form record sync pipeline.

Producer-side errors (``RecordValidationError``) are raised before a record
is enqueued.  Store errors guard the status lifecycle.  Backend errors are
raised by the remote backend client and are always caught at the upload
orchestrator boundary, where they become ``upload_status = error``.
"""

from __future__ import annotations


class FormSyncError(Exception):
    """Base class for all formsync errors."""


# ---------------------------------------------------------------------------
# Producer-side validation
# ---------------------------------------------------------------------------


class RecordValidationError(FormSyncError):
    """Raised when a record payload fails producer-side required-field checks."""


# ---------------------------------------------------------------------------
# Local record store
# ---------------------------------------------------------------------------


class RecordNotFoundError(FormSyncError, KeyError):
    """Raised when a record id is not present in the local record store."""

    def __str__(self) -> str:
        return f"Record not found: {self.args[0]}" if self.args else "Record not found"


class InvalidTransitionError(FormSyncError):
    """Raised when an upload status change is not a legal lifecycle edge."""

    def __init__(self, record_id: str, current: str, target: str) -> None:
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal status transition for {record_id}: {current} -> {target}"
        )


# ---------------------------------------------------------------------------
# Remote backend
# ---------------------------------------------------------------------------


class BackendError(FormSyncError):
    """Base class for remote backend failures."""


class TransientError(BackendError):
    """Connectivity or timeout failure that may succeed on a later attempt."""


class PermanentError(BackendError):
    """Failure the backend will repeat regardless of retries (e.g. oversized blob)."""


class RejectedFieldError(PermanentError):
    """Raised when a document map contains an undefined (``None``) value."""


class FieldPageOutOfRangeError(PermanentError):
    """Raised when a field references a page outside the committed primary variant."""


# ---------------------------------------------------------------------------
# Queue coordinator
# ---------------------------------------------------------------------------


class AttemptInFlightError(FormSyncError):
    """Raised when an operator action conflicts with a running upload attempt."""
