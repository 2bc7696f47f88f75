"""Pydantic models for the form payload carried by a local record.

The payload is produced by the digitizer (title, category, institution,
contact info, languages, field specs) and must pass these models before a
record may be enqueued.  Multi-language strings follow the ``en``/``si``/``ta``
suffix convention: the unsuffixed (or ``_en``) attribute is the primary text.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Language(str, Enum):
    """Languages a form can be published in."""

    EN = "en"
    SI = "si"
    TA = "ta"


class FieldType(str, Enum):
    """Input types supported for a digitized form field."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    SELECT = "select"
    SIGNATURE = "signature"


class FieldPosition(BaseModel):
    """Field placement on a page, in page-percentage coordinates (0-100)."""

    x: float = Field(ge=0, le=100)
    y: float = Field(ge=0, le=100)
    width: float = Field(gt=0, le=100)
    height: float = Field(gt=0, le=100)
    font_size: float | None = Field(default=None, gt=0)
    align: Literal["left", "center", "right"] | None = None


class FieldSpec(BaseModel):
    """A single fillable field placed on the form."""

    id: str = Field(min_length=1)
    type: FieldType
    label_en: str = Field(min_length=1)
    label_si: str | None = None
    label_ta: str | None = None
    page: int = Field(default=1, ge=1)
    required: bool = False
    placeholder: str | None = None
    placeholder_si: str | None = None
    placeholder_ta: str | None = None
    help_text: str | None = None
    help_text_si: str | None = None
    help_text_ta: str | None = None
    options: list[str] = Field(default_factory=list)
    position: FieldPosition | None = None

    model_config = ConfigDict(use_enum_values=True)


class ContactInfo(BaseModel):
    """Where to submit the form and whom to ask about it."""

    address: str | None = None
    office_hours: str | None = None
    telephone_numbers: list[str] = Field(default_factory=list)
    fax_number: str | None = None
    email: str | None = None
    website: str | None = None
    official_location: str | None = None


class FormPayload(BaseModel):
    """Form metadata plus field specs, as handed over by the digitizer."""

    title: str = Field(min_length=1)
    title_si: str | None = None
    title_ta: str | None = None
    description: str | None = None
    description_si: str | None = None
    description_ta: str | None = None
    form_number: str | None = None
    section: str | None = None
    publish_date: str | None = None
    category_id: str = Field(min_length=1)
    institution_id: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    languages: list[Language] = Field(min_length=1)
    default_language: Language = Language.EN
    contact_info: ContactInfo | None = None
    verification_level: int = Field(default=0, ge=0, le=3)
    fields: list[FieldSpec] = Field(default_factory=list)

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    @field_validator("title", "category_id", "institution_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("languages")
    @classmethod
    def dedupe_languages(cls, v: list[str]) -> list[str]:
        """Drop repeated languages, keeping first-seen order."""
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_consistency(self) -> FormPayload:
        if self.default_language not in self.languages:
            raise ValueError(
                f"default_language {self.default_language!r} is not one of "
                f"the declared languages {self.languages}"
            )
        ids = [f.id for f in self.fields]
        if len(ids) != len(set(ids)):
            raise ValueError("field ids must be unique")
        return self
