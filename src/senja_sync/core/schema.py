"""
Collection schemas.

One pydantic model per collection. The spreadsheet backend hands back
whatever happens to be in the sheet: numbers where text is expected,
``"TRUE"`` for booleans, JSON text for nested values, missing columns.
The annotated types below coerce all of that into the canonical shape so
the sanitizer never has to guess field by field.

Field names are snake_case in Python and camelCase on the wire; records
leave this module as plain dicts keyed by the wire names.
"""

from __future__ import annotations

import json
from enum import Enum
from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


LOWEST_GRADE = "1"
ADMIN_USERNAME = "admin"
ADMIN_ID = "u1"


# =============================================================================
# Coercions
# =============================================================================
def _to_text(value: Any) -> str:
    """Render any scalar as text. Integral floats lose their ``.0``."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _to_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y")
    return False


def _to_grade(value: Any) -> str:
    text = _to_text(value).strip()
    return text or LOWEST_GRADE


def _to_gender(value: Any) -> str:
    text = _to_text(value).strip().upper()
    return text if text in ("L", "P") else ""


def _loads(value: Any) -> Any:
    """Decode JSON text carried inside a flat cell; anything else passes through."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _to_list(value: Any) -> list[Any]:
    value = _loads(value)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _to_mapping(value: Any) -> dict[str, Any]:
    value = _loads(value)
    return value if isinstance(value, dict) else {}


Text = Annotated[str, BeforeValidator(_to_text)]
Flag = Annotated[bool, BeforeValidator(_to_flag)]
Grade = Annotated[str, BeforeValidator(_to_grade)]


# =============================================================================
# Enumerations
# =============================================================================
class Role(str, Enum):
    """Account role."""

    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"

    @classmethod
    def coerce(cls, value: Any) -> "Role":
        text = _to_text(value).strip().upper()
        try:
            return cls(text)
        except ValueError:
            return cls.TEACHER


class ContentType(str, Enum):
    """Kind of reading material."""

    PDF = "PDF"
    VIDEO = "VIDEO"
    ARTICLE = "ARTICLE"

    @classmethod
    def coerce(cls, value: Any) -> "ContentType":
        text = _to_text(value).strip().upper()
        try:
            return cls(text)
        except ValueError:
            return cls.ARTICLE


class SubmissionStatus(str, Enum):
    """Review state of a submission."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def coerce(cls, value: Any) -> "SubmissionStatus":
        """
        Strict allow-list: only an exact marker after trimming and case
        folding is recognized. ``"Approved "`` is approved, ``"approve"``
        and ``True`` are pending.
        """
        if not isinstance(value, str):
            return cls.PENDING
        try:
            return cls(value.strip().casefold())
        except ValueError:
            return cls.PENDING


# =============================================================================
# Record models
# =============================================================================
class SheetRecord(BaseModel):
    """Base for all collection records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_record(self) -> dict[str, Any]:
        """Dump to a plain dict keyed by wire field names."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def wire_names(cls) -> dict[str, str]:
        """Map every accepted input name of a field to its wire name."""
        names: dict[str, str] = {}
        for name, info in cls.model_fields.items():
            wire = info.serialization_alias or info.alias or name
            names[name] = wire
            if isinstance(info.validation_alias, AliasChoices):
                for choice in info.validation_alias.choices:
                    if isinstance(choice, str):
                        names[choice] = wire
        return names

    @classmethod
    def wire_keys(cls, record: Mapping[str, Any]) -> dict[str, Any]:
        """
        Rename the keys of ``record`` to wire names.

        When two keys name the same field, the later one wins, so
        ``{**stored, "class_grade": "3"}`` updates ``classGrade``.
        """
        names = cls.wire_names()
        renamed: dict[str, Any] = {}
        for key, value in record.items():
            renamed[names.get(key, key)] = value
        return renamed


class Question(SheetRecord):
    """A reflection question attached to a content item."""

    id: Text = ""
    text: Text = ""
    type: Text = "text"


class AccountRecord(SheetRecord):
    """Staff login account."""

    id: Text = ""
    username: Text = ""
    password: Text = ""
    name: Text = ""
    role: Annotated[Role, BeforeValidator(Role.coerce)] = Role.TEACHER
    class_assigned: Text = ""

    @model_validator(mode="after")
    def default_class(self) -> "AccountRecord":
        """Teachers without a class get the lowest grade, others stay blank."""
        if not self.class_assigned.strip():
            self.class_assigned = LOWEST_GRADE if self.role is Role.TEACHER else ""
        return self


class RosterRecord(SheetRecord):
    """A student on the roster, keyed by national student number."""

    nisn: Text = ""
    name: Text = ""
    gender: Annotated[str, BeforeValidator(_to_gender)] = ""
    class_grade: Grade = LOWEST_GRADE
    parent_id: Text = ""


class ContentItemRecord(SheetRecord):
    """Reading material with its reflection questions."""

    id: Text = ""
    title: Text = ""
    class_grade: Grade = LOWEST_GRADE
    type: Annotated[ContentType, BeforeValidator(ContentType.coerce)] = ContentType.ARTICLE
    content_url: Text = ""
    cover_image: Text = ""
    description: Text = ""
    task_instruction: Text = ""
    has_task: Flag = False
    reflection_questions: Annotated[list[Question], BeforeValidator(_to_list)] = Field(
        default_factory=list
    )


class SubmissionRecord(SheetRecord):
    """A student's answers and task upload for one content item."""

    id: Text = ""
    student_nisn: Text = ""
    student_name: Text = ""
    material_id: Text = ""
    material_title: Text = ""
    answers: Annotated[dict[str, Text], BeforeValidator(_to_mapping)] = Field(
        default_factory=dict
    )
    task_file: Text = ""
    status: Annotated[SubmissionStatus, BeforeValidator(SubmissionStatus.coerce)] = (
        SubmissionStatus.PENDING
    )
    teacher_feedback: Text = ""
    submitted_at: Text = ""


class SettingsRecord(SheetRecord):
    """Application-wide settings, a single row."""

    cert_background: Text = Field(
        default="",
        validation_alias=AliasChoices("certBackground", "certBg", "cert_background"),
    )


# =============================================================================
# Collections
# =============================================================================
class Collection(str, Enum):
    """Named logical tables kept in the cache."""

    ACCOUNTS = "Accounts"
    ROSTER = "Roster"
    CONTENT_ITEMS = "ContentItems"
    SUBMISSIONS = "Submissions"
    SETTINGS = "Settings"

    @property
    def wire_key(self) -> str:
        """Key of this collection in the pull payload."""
        return self.value.lower()

    @property
    def key_field(self) -> str | None:
        """Wire name of the key field, None for the singleton."""
        return _KEY_FIELDS[self]

    @property
    def is_singleton(self) -> bool:
        return self is Collection.SETTINGS

    @property
    def model(self) -> type[SheetRecord]:
        return _MODELS[self]

    @classmethod
    def parse(cls, name: str) -> "Collection":
        """Resolve a user-supplied name: ``roster``, ``ContentItems``, ``content_items``."""
        wanted = name.strip().replace("_", "").replace("-", "").lower()
        for collection in cls:
            if wanted in (collection.wire_key, collection.name.replace("_", "").lower()):
                return collection
        raise ValueError(f"Unknown collection: {name}")


_KEY_FIELDS: dict[Collection, str | None] = {
    Collection.ACCOUNTS: "id",
    Collection.ROSTER: "nisn",
    Collection.CONTENT_ITEMS: "id",
    Collection.SUBMISSIONS: "id",
    Collection.SETTINGS: None,
}

_MODELS: dict[Collection, type[SheetRecord]] = {
    Collection.ACCOUNTS: AccountRecord,
    Collection.ROSTER: RosterRecord,
    Collection.CONTENT_ITEMS: ContentItemRecord,
    Collection.SUBMISSIONS: SubmissionRecord,
    Collection.SETTINGS: SettingsRecord,
}


def default_admin(record_id: str = ADMIN_ID) -> dict[str, Any]:
    """The administrator account injected whenever the remote has none."""
    return AccountRecord(
        id=record_id,
        username=ADMIN_USERNAME,
        password="admin",
        name="Administrator",
        role=Role.ADMIN,
        class_assigned="",
    ).to_record()
