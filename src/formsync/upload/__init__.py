"""Local-first upload pipeline: local records to the remote system of record.

Public API
----------
.. autoclass:: RemoteBackend
.. autoclass:: FilesystemBackend
.. autoclass:: StatusBroadcaster
.. autoclass:: UploadOrchestrator
.. autoclass:: UploadQueueCoordinator
.. autoclass:: UploadProgressTracker
.. autoclass:: RecoveryManager
.. autoclass:: RecoveryResult
"""

from formsync.upload.backend import FilesystemBackend, RemoteBackend
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.document_builder import (
    build_document_fields,
    build_field_record,
    document_id_for,
    sanitize_document,
)
from formsync.upload.fsm import RecordLifecycleSM, create_fsm, transition_event
from formsync.upload.orchestrator import UploadOrchestrator
from formsync.upload.progress import UploadProgressTracker
from formsync.upload.queue import QueueSnapshot, UploadQueueCoordinator
from formsync.upload.recovery import RecoveryManager, RecoveryResult
from formsync.upload.stages import STAGES, ProgressReporter, percent_for

__all__ = [
    "STAGES",
    "FilesystemBackend",
    "ProgressReporter",
    "QueueSnapshot",
    "RecordLifecycleSM",
    "RecoveryManager",
    "RecoveryResult",
    "RemoteBackend",
    "StatusBroadcaster",
    "UploadOrchestrator",
    "UploadProgressTracker",
    "UploadQueueCoordinator",
    "build_document_fields",
    "build_field_record",
    "create_fsm",
    "document_id_for",
    "percent_for",
    "sanitize_document",
    "transition_event",
]
