"""Backing tables, keys and export columns for every entity type."""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from app.jobs.models import EntityType


@dataclass(frozen=True)
class EntitySpec:
    entity_type: EntityType
    table: str
    primary_key: str
    export_columns: Tuple[str, ...]
    natural_key: Optional[str] = None
    uuid_keys: bool = False
    filter_columns: Tuple[str, ...] = ()

    def conflict_key(self, record: Dict) -> Optional[str]:
        """Column an upsert should match on, or None for a plain insert."""
        if record.get(self.primary_key) is not None:
            return self.primary_key
        if self.natural_key and record.get(self.natural_key) is not None:
            return self.natural_key
        return None


CATALOG: Dict[EntityType, EntitySpec] = {
    EntityType.AUDIOBOOKS: EntitySpec(
        entity_type=EntityType.AUDIOBOOKS,
        table="audiobooks",
        primary_key="id",
        export_columns=(
            "id", "title_fa", "title_en", "content_type", "status",
            "category_id", "price_toman", "is_free", "is_featured",
            "play_count", "purchase_count", "published_at", "created_at",
        ),
        filter_columns=("status", "content_type", "category_id"),
    ),
    EntityType.CREATORS: EntitySpec(
        entity_type=EntityType.CREATORS,
        table="creators",
        primary_key="id",
        export_columns=(
            "id", "display_name", "display_name_latin", "creator_type",
            "bio", "avatar_url", "created_at",
        ),
        uuid_keys=True,
        filter_columns=("creator_type",),
    ),
    EntityType.USERS: EntitySpec(
        entity_type=EntityType.USERS,
        table="profiles",
        primary_key="id",
        export_columns=(
            "id", "display_name", "email", "role", "is_disabled", "created_at",
        ),
        uuid_keys=True,
        filter_columns=("role",),
    ),
    EntityType.CATEGORIES: EntitySpec(
        entity_type=EntityType.CATEGORIES,
        table="categories",
        primary_key="id",
        natural_key="slug",
        export_columns=(
            "id", "slug", "name_fa", "name_en", "is_active", "sort_order",
        ),
    ),
    EntityType.ANALYTICS: EntitySpec(
        entity_type=EntityType.ANALYTICS,
        table="listening_sessions",
        primary_key="id",
        export_columns=(
            "id", "user_id", "audiobook_id", "session_date",
            "duration_seconds", "chapters_listened", "created_at",
        ),
    ),
    EntityType.AUDIT_LOGS: EntitySpec(
        entity_type=EntityType.AUDIT_LOGS,
        table="audit_logs",
        primary_key="id",
        export_columns=(
            "id", "actor_id", "actor_email", "action", "entity_type",
            "entity_id", "description", "created_at",
        ),
        uuid_keys=True,
    ),
}


def get_spec(entity_type: EntityType) -> EntitySpec:
    return CATALOG[entity_type]


class UnsupportedFilterError(ValueError):
    pass


def clean_filters(entity_type: EntityType, filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Check export filters against the entity's filterable columns.

    Null values mean "no filter" and are dropped.
    """
    spec = get_spec(entity_type)
    cleaned = {k: v for k, v in (filters or {}).items() if v is not None}
    unknown = sorted(set(cleaned) - set(spec.filter_columns))
    if unknown:
        allowed = ", ".join(spec.filter_columns) or "none"
        raise UnsupportedFilterError(
            f"Cannot filter {entity_type.value} by {', '.join(unknown)} (allowed: {allowed})"
        )
    for key, value in cleaned.items():
        if not isinstance(value, (str, int, bool)):
            raise UnsupportedFilterError(f"Filter {key} must be a single value")
    return cleaned
