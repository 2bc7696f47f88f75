"""Build remote document and field-child maps from a local record.

Also owns the deterministic remote identities and storage paths, and the
single schema sanitization step: the remote document store rejects
undefined-valued keys, so optional values with no content are dropped from
the wire map rather than written as null or empty.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from formsync.exceptions import FieldPageOutOfRangeError
from formsync.models import LocalRecord, RemoteVariantDescriptor
from formsync.schemas import ContactInfo, FieldSpec

# Namespace for document ids derived from local record ids.  Changing it
# would orphan every previously committed document.
DOCUMENT_NAMESPACE = uuid.UUID("6f2c1c3e-5a7d-4f0e-9b8a-3d9e1f4c2a71")

REMOTE_AUTHOR = "admin"


# ---------------------------------------------------------------------------
# Identities and paths
# ---------------------------------------------------------------------------


def document_id_for(record_id: str) -> str:
    """Remote document id for a local record (stable across retries)."""
    return str(uuid.uuid5(DOCUMENT_NAMESPACE, record_id))


def document_path(record_id: str, language: str) -> str:
    return f"forms/{record_id}/pdf_{language}.pdf"


def thumbnail_path(record_id: str, language: str, page_number: int) -> str:
    """Storage path of a page thumbnail; *page_number* is 1-based."""
    return f"forms/{record_id}/thumbnails/{language}_page_{page_number}.jpg"


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return True
    return False


def sanitize_document(mapping: Mapping[str, Any]) -> dict[str, Any]:
    """Return a wire-format copy of *mapping* containing only present keys.

    Recursively drops keys whose value is ``None``, an empty string, an empty
    list or an empty mapping (after nested sanitization).  ``0`` and
    ``False`` are real values and are kept.
    """
    clean: dict[str, Any] = {}
    for key, value in mapping.items():
        value = _sanitize_value(value)
        if not _is_empty(value):
            clean[key] = value
    return clean


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_document(value)
    if isinstance(value, (list, tuple)):
        return [
            item
            for item in (_sanitize_value(v) for v in value)
            if not _is_empty(item)
        ]
    return value


# ---------------------------------------------------------------------------
# Document and field maps
# ---------------------------------------------------------------------------


def _contact_info_map(info: ContactInfo | None) -> dict[str, Any] | None:
    if info is None:
        return None
    return {
        "address": info.address,
        "officeHours": info.office_hours,
        "telephoneNumbers": info.telephone_numbers,
        "faxNumber": info.fax_number,
        "email": info.email,
        "website": info.website,
        "officialLocation": info.official_location,
    }


def build_document_fields(
    record: LocalRecord,
    descriptors: Iterable[RemoteVariantDescriptor],
    thumbnails: Mapping[str, list[str]],
    published_at: datetime | None = None,
) -> dict[str, Any]:
    """Assemble the full (unsanitized) remote document map for *record*.

    Args:
        record: The local record being committed.
        descriptors: One descriptor per committed document blob.
        thumbnails: Committed thumbnail storage paths keyed by language.
        published_at: Publication timestamp; defaults to now (UTC).

    Returns:
        A camelCase map that may still contain ``None`` and empty values;
        pass it through :func:`sanitize_document` before writing.
    """
    payload = record.payload
    published_at = published_at or datetime.now(timezone.utc)
    return {
        "slug": record.id,
        "formNumber": payload.form_number,
        "section": payload.section,
        "publishDate": payload.publish_date,
        "title": payload.title,
        "titleSi": payload.title_si,
        "titleTa": payload.title_ta,
        "description": payload.description,
        "descriptionSi": payload.description_si,
        "descriptionTa": payload.description_ta,
        "categoryId": payload.category_id,
        "institutionId": payload.institution_id,
        "tags": list(payload.tags),
        "languages": list(payload.languages),
        "defaultLanguage": record.default_language,
        "pdfVariants": {d.language: d.to_wire() for d in descriptors},
        "thumbnails": dict(thumbnails),
        "contactInfo": _contact_info_map(payload.contact_info),
        "isDigitized": True,
        "hasOnlineFill": len(payload.fields) > 0,
        "status": "published",
        "verificationLevel": payload.verification_level,
        "viewCount": 0,
        "downloadCount": 0,
        "fillCount": 0,
        "createdBy": REMOTE_AUTHOR,
        "updatedBy": REMOTE_AUTHOR,
        "publishedAt": published_at.isoformat(),
    }


def build_field_record(spec: FieldSpec, order: int) -> dict[str, Any]:
    """Build the sanitized child record for one field at display *order*."""
    position = None
    if spec.position is not None:
        position = {
            "page": spec.page,
            "x": spec.position.x,
            "y": spec.position.y,
            "width": spec.position.width,
            "height": spec.position.height,
            "fontSize": spec.position.font_size,
            "align": spec.position.align,
        }
    return sanitize_document(
        {
            "type": spec.type,
            "label": spec.label_en,
            "labelSi": spec.label_si,
            "labelTa": spec.label_ta,
            "placeholder": spec.placeholder,
            "placeholderSi": spec.placeholder_si,
            "placeholderTa": spec.placeholder_ta,
            "helpText": spec.help_text,
            "helpTextSi": spec.help_text_si,
            "helpTextTa": spec.help_text_ta,
            "required": spec.required,
            "options": [{"value": opt, "label": opt} for opt in spec.options],
            "position": position,
            "order": order,
        }
    )


def check_field_pages(fields: Iterable[FieldSpec], page_count: int) -> None:
    """Ensure every field sits on a page of the committed primary document.

    Raises:
        FieldPageOutOfRangeError: On the first field past *page_count*.
    """
    for spec in fields:
        if spec.page < 1 or spec.page > page_count:
            raise FieldPageOutOfRangeError(
                f"Field {spec.id!r} references page {spec.page}; "
                f"primary document has {page_count} page(s)"
            )
