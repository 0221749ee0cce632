"""Per-entity row validation for bulk imports.

validate() is pure: it never performs I/O and never raises for bad input.
A malformed row is the expected failure case and comes back as a list of
human-readable messages covering every problem found in that row.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from app.jobs.models import EntityType, IMPORTABLE_TYPES

AUDIOBOOK_STATUSES = ("draft", "submitted", "under_review", "approved", "rejected")
CONTENT_TYPES = ("audiobook", "music", "podcast", "article", "ebook")
CREATOR_TYPES = (
    "author", "translator", "narrator", "artist", "singer", "composer",
    "lyricist", "musician", "arranger", "publisher", "label", "other",
)

_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_TRUE = {"true", "1", "yes", "y"}
_FALSE = {"false", "0", "no", "n"}


@dataclass
class ValidationResult:
    record: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def normalize_keys(raw: Dict[Any, Any]) -> Dict[Any, Any]:
    """Trim/lower-case header names, strip a BOM, and turn blank cells into None."""
    out: Dict[Any, Any] = {}
    for key, value in raw.items():
        if isinstance(key, str):
            key = key.lstrip("\ufeff").strip().lower()
        if isinstance(value, str):
            value = value.strip()
            if value == "":
                value = None
        out[key] = value
    return out


class _Row:
    """Collects coerced fields and errors for one row in a single pass."""

    def __init__(self, raw: Dict[Any, Any]):
        self.raw = raw
        self.record: Dict[str, Any] = {}
        self.errors: List[str] = []

    def _get(self, name: str, required: bool) -> Any:
        value = self.raw.get(name)
        if value is None and required:
            self.errors.append(f"{name} is required")
        return value

    def text(self, name: str, required: bool = False, max_length: int = 500) -> None:
        value = self._get(name, required)
        if value is None:
            return
        value = str(value)
        if len(value) > max_length:
            self.errors.append(f"{name} must be at most {max_length} characters")
            return
        self.record[name] = value

    def integer(
        self,
        name: str,
        required: bool = False,
        minimum: Optional[int] = None,
        default: Optional[int] = None,
    ) -> None:
        value = self._get(name, required)
        if value is None:
            if default is not None:
                self.record[name] = default
            return
        try:
            if isinstance(value, bool):
                raise ValueError
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError
                number = int(value)
            else:
                number = int(str(value))
        except ValueError:
            self.errors.append(f"{name} must be a whole number, got '{value}'")
            return
        if minimum is not None and number < minimum:
            self.errors.append(f"{name} must be >= {minimum}, got {number}")
            return
        self.record[name] = number

    def boolean(self, name: str, default: Optional[bool] = None) -> None:
        value = self.raw.get(name)
        if value is None:
            if default is not None:
                self.record[name] = default
            return
        if isinstance(value, bool):
            self.record[name] = value
            return
        text = str(value).strip().lower()
        if text in _TRUE:
            self.record[name] = True
        elif text in _FALSE:
            self.record[name] = False
        else:
            self.errors.append(f"{name} must be true or false, got '{value}'")

    def choice(self, name: str, choices: tuple, default: Optional[str] = None) -> None:
        value = self.raw.get(name)
        if value is None:
            if default is not None:
                self.record[name] = default
            return
        text = str(value).strip().lower()
        if text not in choices:
            self.errors.append(f"{name} must be one of {', '.join(choices)}, got '{value}'")
            return
        self.record[name] = text

    def date_value(self, name: str) -> None:
        value = self.raw.get(name)
        if value is None:
            return
        if isinstance(value, datetime):
            self.record[name] = value.date().isoformat()
            return
        if isinstance(value, date):
            self.record[name] = value.isoformat()
            return
        text = str(value)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            self.errors.append(f"{name} must be an ISO date (YYYY-MM-DD), got '{value}'")
            return
        self.record[name] = parsed.date().isoformat() if len(text) <= 10 else parsed.isoformat()

    def uuid_value(self, name: str) -> None:
        value = self.raw.get(name)
        if value is None:
            return
        try:
            self.record[name] = str(uuid.UUID(str(value)))
        except ValueError:
            self.errors.append(f"{name} must be a UUID, got '{value}'")

    def url(self, name: str) -> None:
        value = self.raw.get(name)
        if value is None:
            return
        text = str(value)
        if not text.startswith(("http://", "https://")):
            self.errors.append(f"{name} must be an http(s) URL")
            return
        self.record[name] = text


def _validate_audiobook(row: _Row) -> None:
    row.integer("id", minimum=1)
    row.text("title_fa", required=True)
    row.text("title_en")
    row.choice("content_type", CONTENT_TYPES, default="audiobook")
    row.choice("status", AUDIOBOOK_STATUSES, default="draft")
    row.integer("category_id", minimum=1)
    row.integer("price_toman", minimum=0, default=0)
    row.boolean("is_free", default=False)
    row.boolean("is_featured", default=False)
    row.date_value("published_at")
    if row.record.get("is_free") and row.record.get("price_toman"):
        row.errors.append("free audiobooks must have price_toman 0")


def _validate_creator(row: _Row) -> None:
    row.uuid_value("id")
    row.text("display_name", required=True)
    row.text("display_name_latin")
    row.choice("creator_type", CREATOR_TYPES, default="other")
    row.text("bio", max_length=5000)
    row.url("avatar_url")


def _validate_category(row: _Row) -> None:
    row.integer("id", minimum=1)
    slug = row.raw.get("slug")
    if slug is None:
        row.errors.append("slug is required")
    elif not _SLUG_RE.match(str(slug)):
        row.errors.append(f"slug must be lowercase letters, digits and dashes, got '{slug}'")
    else:
        row.record["slug"] = str(slug)
    row.text("name_fa", required=True)
    row.text("name_en")
    row.boolean("is_active", default=True)
    row.integer("sort_order", minimum=0, default=0)


_VALIDATORS: Dict[EntityType, Callable[[_Row], None]] = {
    EntityType.AUDIOBOOKS: _validate_audiobook,
    EntityType.CREATORS: _validate_creator,
    EntityType.CATEGORIES: _validate_category,
}


def validate(entity_type: EntityType, raw_record: Dict[Any, Any]) -> ValidationResult:
    """Validate and normalize one raw import record."""
    if entity_type not in IMPORTABLE_TYPES:
        return ValidationResult(errors=[f"imports are not supported for {entity_type.value}"])
    if not isinstance(raw_record, dict):
        return ValidationResult(errors=["row must be a mapping of column names to values"])

    row = _Row(normalize_keys(raw_record))
    # csv.DictReader files surplus cells under the None key
    extra = [v for v in row.raw.pop(None, None) or [] if v is not None and str(v).strip()]
    if extra:
        row.errors.append(f"row has {len(extra)} more value(s) than the header has columns")

    _VALIDATORS[entity_type](row)
    if row.errors:
        return ValidationResult(errors=row.errors)
    return ValidationResult(record=row.record)
