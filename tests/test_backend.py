"""Tests for the filesystem remote backend."""

from __future__ import annotations

from pathlib import Path

import pytest

from formsync.exceptions import PermanentError, RejectedFieldError
from formsync.upload.backend import FilesystemBackend, RemoteBackend, find_none_path


def test_filesystem_backend_satisfies_protocol(backend: FilesystemBackend) -> None:
    assert isinstance(backend, RemoteBackend)


async def test_put_blob_writes_and_reports_progress(backend: FilesystemBackend) -> None:
    fractions: list[float] = []
    data = b"x" * 2000  # four 512-byte chunks

    path = await backend.put_blob("form-a", "en", data, fractions.append)

    assert path == "forms/form-a/pdf_en.pdf"
    assert backend.blob_exists(path)
    assert (backend.objects_dir / path).read_bytes() == data
    assert fractions == sorted(fractions)
    assert fractions[-1] == 1.0
    assert len(fractions) == 4


async def test_put_blob_overwrites_by_path(backend: FilesystemBackend) -> None:
    await backend.put_blob("form-a", "en", b"first")
    path = await backend.put_blob("form-a", "en", b"second")
    assert (backend.objects_dir / path).read_bytes() == b"second"


async def test_put_blob_rejects_oversized(tmp_path: Path) -> None:
    limited = FilesystemBackend(tmp_path / "remote", max_blob_bytes=10)
    with pytest.raises(PermanentError, match="byte limit"):
        await limited.put_blob("form-a", "en", b"x" * 11)
    assert not limited.blob_exists("forms/form-a/pdf_en.pdf")


async def test_put_blob_rejects_path_escape(backend: FilesystemBackend) -> None:
    with pytest.raises(PermanentError, match="Invalid identifier"):
        await backend.put_blob("../escape", "en", b"data")


async def test_put_thumbnails_in_page_order(backend: FilesystemBackend) -> None:
    fractions: list[float] = []
    paths = await backend.put_thumbnails("form-a", "si", [b"p1", b"p2", b"p3"], fractions.append)

    assert paths == [
        "forms/form-a/thumbnails/si_page_1.jpg",
        "forms/form-a/thumbnails/si_page_2.jpg",
        "forms/form-a/thumbnails/si_page_3.jpg",
    ]
    assert (backend.objects_dir / paths[1]).read_bytes() == b"p2"
    assert fractions == pytest.approx([1 / 3, 2 / 3, 1.0])


async def test_create_document_upserts(backend: FilesystemBackend) -> None:
    await backend.create_document("doc-1", {"title": "First"})
    await backend.create_document("doc-1", {"title": "Second"})

    assert backend.list_documents() == ["doc-1"]
    assert backend.read_document("doc-1") == {"id": "doc-1", "title": "Second"}


async def test_create_document_replaces_children(backend: FilesystemBackend) -> None:
    await backend.create_document("doc-1", {"title": "First"})
    await backend.append_child("doc-1", {"label": "A"}, 0)
    await backend.append_child("doc-1", {"label": "B"}, 1)

    await backend.create_document("doc-1", {"title": "Second"})

    assert backend.list_children("doc-1") == []
    await backend.append_child("doc-1", {"label": "C"}, 0)
    assert [c["label"] for c in backend.list_children("doc-1")] == ["C"]


async def test_create_document_rejects_undefined_values(backend: FilesystemBackend) -> None:
    with pytest.raises(RejectedFieldError, match="contactInfo.address"):
        await backend.create_document("doc-1", {"title": "T", "contactInfo": {"address": None}})
    assert backend.read_document("doc-1") is None


async def test_append_child_requires_document(backend: FilesystemBackend) -> None:
    with pytest.raises(PermanentError, match="Document not found"):
        await backend.append_child("doc-1", {"type": "text"}, 0)


async def test_append_child_is_keyed_by_order(backend: FilesystemBackend) -> None:
    await backend.create_document("doc-1", {"title": "T"})
    first = await backend.append_child("doc-1", {"label": "A"}, 0)
    await backend.append_child("doc-1", {"label": "B"}, 1)
    again = await backend.append_child("doc-1", {"label": "A2"}, 0)

    assert first == again == "doc-1-0000"
    children = backend.list_children("doc-1")
    assert [c["label"] for c in children] == ["A2", "B"]
    assert [c["order"] for c in children] == [0, 1]


def test_find_none_path() -> None:
    assert find_none_path({"a": 1, "b": [1, {"c": None}]}) == "b[1].c"
    assert find_none_path({"a": 0, "b": False}) is None
