"""Catalog entities and identifiers."""

from .ids import CURRENT_USER, DEFAULT_ZONE, CompositeID, ZoneID, sanitize
from .models import (
    ENTITY_TYPES,
    Category,
    Recipe,
    RecipeStep,
    RecordDecodeError,
    ShareState,
    ShareStatus,
    Source,
    Tag,
)

__all__ = [
    "CURRENT_USER",
    "DEFAULT_ZONE",
    "CompositeID",
    "ZoneID",
    "sanitize",
    "ENTITY_TYPES",
    "Category",
    "Recipe",
    "RecipeStep",
    "RecordDecodeError",
    "ShareState",
    "ShareStatus",
    "Source",
    "Tag",
]
