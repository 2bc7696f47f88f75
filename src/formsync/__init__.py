"""Local-first durable sync of digitized form records to a remote system of record."""

__version__ = "0.1.0"

from formsync.models import LocalRecord, UploadProgress, UploadResult, UploadStatus
from formsync.schemas import FieldSpec, FormPayload

__all__ = [
    "FieldSpec",
    "FormPayload",
    "LocalRecord",
    "UploadProgress",
    "UploadResult",
    "UploadStatus",
    "__version__",
]
