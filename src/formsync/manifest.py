"""Build local records from a digitizer manifest file.

A manifest is a JSON object describing one digitized form::

    {
      "id": "form-1718000000000-abc123xyz",      (optional)
      "payload": { "title": "...", "category_id": "...", ... },
      "document": "en.pdf",
      "thumbnails": ["en_page_1.jpg", "en_page_2.jpg"],
      "variants": [
        {"language": "si", "document": "si.pdf", "thumbnails": ["si_page_1.jpg"]}
      ]
    }

File paths are resolved relative to the manifest's own directory.
"""

from __future__ import annotations

import json
from pathlib import Path

from formsync.exceptions import RecordValidationError
from formsync.models import LanguageVariant, LocalRecord, build_payload, new_record_id


def load_manifest(manifest_path: Path) -> LocalRecord:
    """Read *manifest_path* and return an unsaved :class:`LocalRecord`.

    Raises:
        RecordValidationError: If the manifest is malformed, the payload fails
            validation, or a referenced file is missing.
    """
    try:
        with open(manifest_path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise RecordValidationError(f"Cannot read manifest {manifest_path}: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
        raise RecordValidationError(f"Manifest {manifest_path} needs a 'payload' object")

    base = manifest_path.parent
    payload = build_payload(data["payload"])
    variants = [
        LanguageVariant(
            language=_language(entry, manifest_path),
            document=_read_optional(base, entry.get("document")),
            thumbnails=[_read(base, p) for p in entry.get("thumbnails", [])],
        )
        for entry in data.get("variants", [])
    ]
    return LocalRecord(
        id=data.get("id") or new_record_id(),
        payload=payload,
        document=_read_optional(base, data.get("document")),
        thumbnails=[_read(base, p) for p in data.get("thumbnails", [])],
        variants=variants,
    )


def _language(entry: object, manifest_path: Path) -> str:
    if not isinstance(entry, dict) or not entry.get("language"):
        raise RecordValidationError(f"Every variant in {manifest_path} needs a 'language'")
    return str(entry["language"])


def _read_optional(base: Path, relative: str | None) -> bytes | None:
    return _read(base, relative) if relative else None


def _read(base: Path, relative: str) -> bytes:
    path = base / relative
    try:
        return path.read_bytes()
    except OSError as exc:
        raise RecordValidationError(f"Cannot read {path}: {exc}") from exc
