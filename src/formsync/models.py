"""Data models and enums for the form record sync pipeline."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import ValidationError

from formsync.exceptions import RecordValidationError
from formsync.schemas import FormPayload, Language


class UploadStatus(str, Enum):
    """Coarse upload state persisted with every local record."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"


class PipelineStage(str, Enum):
    """Fine-grained stage reported in progress events.

    Only the last entered stage is persisted, as a recovery diagnostic.
    """

    PENDING = "pending"
    UPLOADING_PDF = "uploading_pdf"
    UPLOADING_THUMBNAILS = "uploading_thumbnails"
    SAVING_TO_FIRESTORE = "saving_to_firestore"
    SAVING_FIELDS = "saving_fields"
    COMPLETED = "completed"
    ERROR = "error"


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string with microseconds."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def new_record_id() -> str:
    """Generate a client-side record id: ``form-<epoch-ms>-<9 base36 chars>``."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choices(alphabet, k=9))
    return f"form-{int(time.time() * 1000)}-{suffix}"


@dataclass
class LanguageVariant:
    """An alternate-language rendition of the form document."""

    language: str
    document: bytes | None = None
    thumbnails: list[bytes] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.thumbnails) or 1


@dataclass
class LocalRecord:
    """A digitized form stored locally before (and independent of) remote commit.

    ``document`` and ``thumbnails`` hold the default-language payload;
    ``variants`` hold any additional languages.  Blob fields are empty when
    the record was loaded with ``with_blobs=False``.
    """

    id: str
    payload: FormPayload
    document: bytes | None = None
    thumbnails: list[bytes] = field(default_factory=list)
    variants: list[LanguageVariant] = field(default_factory=list)
    upload_status: UploadStatus = UploadStatus.PENDING
    upload_error: str | None = None
    attempt_count: int = 0
    last_stage: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def default_language(self) -> str:
        return Language(self.payload.default_language).value

    @property
    def primary_page_count(self) -> int:
        """Pages in the default-language document (one thumbnail per page, minimum 1)."""
        return len(self.thumbnails) or 1


@dataclass
class UploadProgress:
    """One status event for an in-flight upload attempt."""

    record_id: str
    stage: PipelineStage
    percent: float
    current_step: str
    retry_count: int = 0
    error: str | None = None


@dataclass(frozen=True)
class RemoteVariantDescriptor:
    """Committed storage location of one language's document blob."""

    language: str
    storage_path: str
    page_count: int
    file_size: int

    def to_wire(self) -> dict[str, object]:
        return {
            "storagePath": self.storage_path,
            "pageCount": self.page_count,
            "fileSize": self.file_size,
        }


@dataclass
class UploadResult:
    """Outcome of a single orchestrator attempt."""

    record_id: str
    status: UploadStatus
    document_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == UploadStatus.COMPLETED


def build_payload(data: dict) -> FormPayload:
    """Parse a raw payload mapping, raising :class:`RecordValidationError` on failure."""
    try:
        return FormPayload.model_validate(data)
    except ValidationError as exc:
        raise RecordValidationError(str(exc)) from exc


def validate_record(record: LocalRecord) -> None:
    """Producer-side checks that go beyond the payload schema.

    Raises:
        RecordValidationError: If a field points past the primary document's
            pages or a variant uses an undeclared language.
    """
    page_count = record.primary_page_count
    for spec in record.payload.fields:
        if spec.page > page_count:
            raise RecordValidationError(
                f"Field {spec.id!r} is on page {spec.page} but the document "
                f"has {page_count} page(s)"
            )

    declared = {Language(lang).value for lang in record.payload.languages}
    for variant in record.variants:
        if variant.language not in declared:
            raise RecordValidationError(
                f"Variant language {variant.language!r} is not declared in languages"
            )
