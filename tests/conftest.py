"""Shared pytest fixtures for form sync pipeline tests.

Provides a file-backed local record store, a filesystem remote backend,
a status broadcaster with an event recorder, the orchestrator and queue
coordinator wired together, and a factory for realistic local records.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from formsync.config import SyncConfig
from formsync.database import LocalRecordStore
from formsync.models import LanguageVariant, LocalRecord, UploadProgress
from formsync.schemas import FormPayload
from formsync.upload.backend import FilesystemBackend
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.orchestrator import UploadOrchestrator
from formsync.upload.queue import UploadQueueCoordinator

PDF_BYTES = b"%PDF-1.7\n" + b"0" * 2048
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"1" * 512

DEFAULT_FIELDS = [
    {"id": "full_name", "type": "text", "label_en": "Full name", "page": 1, "required": True},
    {"id": "date_of_birth", "type": "date", "label_en": "Date of birth", "page": 1},
    {"id": "signature", "type": "signature", "label_en": "Signature", "page": 2},
]


def make_payload(**overrides: object) -> FormPayload:
    """Build a valid payload, overriding any top-level key."""
    data: dict[str, object] = {
        "title": "Application for Birth Certificate",
        "category_id": "civil-registration",
        "institution_id": "registrar-general",
        "languages": ["en"],
        "fields": DEFAULT_FIELDS,
    }
    data.update(overrides)
    return FormPayload.model_validate(data)


@pytest.fixture
def make_record() -> Callable[..., LocalRecord]:
    """Factory for local records: one primary PDF, N thumbnails, optional variants."""
    counter = 0

    def _make(
        record_id: str | None = None,
        *,
        thumbnails: int = 2,
        document: bytes | None = PDF_BYTES,
        variants: tuple[str, ...] = (),
        **payload_overrides: object,
    ) -> LocalRecord:
        nonlocal counter
        counter += 1
        if variants and "languages" not in payload_overrides:
            payload_overrides["languages"] = ["en", *variants]
        return LocalRecord(
            id=record_id or f"form-1718000000000-test{counter:05d}",
            payload=make_payload(**payload_overrides),
            document=document,
            thumbnails=[JPEG_BYTES] * thumbnails,
            variants=[
                LanguageVariant(lang, document=PDF_BYTES + lang.encode(), thumbnails=[JPEG_BYTES])
                for lang in variants
            ],
        )

    return _make


@pytest.fixture
def store(tmp_path: Path) -> LocalRecordStore:
    """Create a temporary local record store (file-based for WAL support)."""
    s = LocalRecordStore(tmp_path / "formsync.db")
    yield s
    s.close()


@pytest.fixture
def backend(tmp_path: Path) -> FilesystemBackend:
    return FilesystemBackend(tmp_path / "remote", chunk_size=512)


@pytest.fixture
def broadcaster() -> StatusBroadcaster:
    b = StatusBroadcaster()
    yield b
    b.close()


@pytest.fixture
def events(broadcaster: StatusBroadcaster) -> list[UploadProgress]:
    """Every progress event published during the test, in order."""
    received: list[UploadProgress] = []
    broadcaster.subscribe(received.append)
    return received


@pytest.fixture
def orchestrator(
    store: LocalRecordStore, backend: FilesystemBackend, broadcaster: StatusBroadcaster
) -> UploadOrchestrator:
    return UploadOrchestrator(store, backend, broadcaster)


@pytest.fixture
def sync_config(tmp_path: Path) -> SyncConfig:
    """Config with retained completed records and no backoff sleeps."""
    return SyncConfig(
        db_path=tmp_path / "formsync.db",
        remote_root=tmp_path / "remote",
        evict_on_complete=False,
        retry_min_wait=0,
        retry_max_wait=0,
    )


@pytest.fixture
def coordinator(
    store: LocalRecordStore,
    orchestrator: UploadOrchestrator,
    broadcaster: StatusBroadcaster,
    sync_config: SyncConfig,
) -> UploadQueueCoordinator:
    c = UploadQueueCoordinator(store, orchestrator, broadcaster, sync_config)
    yield c
    c.close()
