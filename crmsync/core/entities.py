"""CRM entity type names."""

from typing import Optional

ENTITY_TYPES = (
    "deals",
    "persons",
    "organizations",
    "activities",
    "products",
    "files",
    "notes",
    "users",
    "pipelines",
    "stages",
    "goals",
)

# Types the sync driver can page through (webhooks never carry custom fields)
SYNCABLE_ENTITY_TYPES = ENTITY_TYPES + ("custom_fields",)

_SINGULAR = {
    "activity": "activities",
    "deal": "deals",
    "file": "files",
    "goal": "goals",
    "note": "notes",
    "organization": "organizations",
    "person": "persons",
    "pipeline": "pipelines",
    "product": "products",
    "stage": "stages",
    "user": "users",
    "custom_field": "custom_fields",
}


def normalize_entity_type(name: Optional[str]) -> Optional[str]:
    """Map "deal" / "Deal" / "deals" to "deals"; unknown names pass through lowercased."""
    if not name:
        return None
    key = name.strip().lower()
    return _SINGULAR.get(key, key)
