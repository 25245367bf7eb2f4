"""Catalog value records: sources, categories, tags and recipes.

Records are immutable; edits go through dataclasses.replace(). Each type
converts to and from a RemoteRecord (what the remote service stores) and a
flat cache dictionary (what LocalCache writes to disk).
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .records import (
    CATEGORY_TYPE,
    RECIPE_TYPE,
    SOURCE_TYPE,
    TAG_TYPE,
    RemoteRecord,
)
from .ids import CompositeID


class RecordDecodeError(ValueError):
    """A remote record or cache entry is missing required fields."""


def _require(record: RemoteRecord, *keys: str) -> None:
    missing = [k for k in keys if record.fields.get(k) is None]
    if missing:
        raise RecordDecodeError(
            f"{record.record_type} {record.record_id.name} missing fields: "
            f"{', '.join(missing)}"
        )


def _require_ref(record: RemoteRecord, key: str) -> CompositeID:
    ref = record.get_ref(key)
    if ref is None:
        raise RecordDecodeError(
            f"{record.record_type} {record.record_id.name} missing reference: {key}"
        )
    return ref


@dataclass(frozen=True)
class Source:
    """Root of a partition: a recipe collection."""

    id: CompositeID
    name: str
    is_personal: bool
    owner: str
    last_modified: datetime = field(default_factory=datetime.now)

    def to_record(self) -> RemoteRecord:
        return RemoteRecord(
            record_type=SOURCE_TYPE,
            record_id=self.id,
            fields={
                "name": self.name,
                "isPersonal": self.is_personal,
                "owner": self.owner,
                "lastModified": self.last_modified.isoformat(),
            },
        )

    @classmethod
    def from_record(cls, record: RemoteRecord) -> "Source":
        _require(record, "name", "isPersonal", "owner", "lastModified")
        return cls(
            id=record.record_id,
            name=record.fields["name"],
            is_personal=bool(record.fields["isPersonal"]),
            owner=record.fields["owner"],
            last_modified=record.get_datetime("lastModified"),
        )

    def to_cache_dict(self) -> dict[str, Any]:
        return {
            **self.id.to_dict(),
            "name": self.name,
            "isPersonal": self.is_personal,
            "owner": self.owner,
            "lastModified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_cache_dict(cls, data: dict[str, Any]) -> "Source":
        return cls(
            id=CompositeID.from_dict(data),
            name=data["name"],
            is_personal=data["isPersonal"],
            owner=data["owner"],
            last_modified=datetime.fromisoformat(data["lastModified"]),
        )


@dataclass(frozen=True)
class Category:
    """A named, iconed grouping of recipes within a source."""

    id: CompositeID
    source_id: CompositeID
    name: str
    icon: str
    last_modified: datetime = field(default_factory=datetime.now)

    def to_record(self, parent: CompositeID | None = None) -> RemoteRecord:
        record = RemoteRecord(
            record_type=CATEGORY_TYPE,
            record_id=self.id,
            fields={
                "name": self.name,
                "icon": self.icon,
                "lastModified": self.last_modified.isoformat(),
            },
            parent_id=parent,
        )
        record.set_ref("sourceID", self.source_id)
        return record

    @classmethod
    def from_record(cls, record: RemoteRecord) -> "Category":
        _require(record, "name", "icon")
        return cls(
            id=record.record_id,
            source_id=_require_ref(record, "sourceID"),
            name=record.fields["name"],
            icon=record.fields["icon"],
            last_modified=record.get_datetime("lastModified") or datetime.now(),
        )

    def to_cache_dict(self) -> dict[str, Any]:
        return {
            **self.id.to_dict(),
            **self.source_id.to_dict("source"),
            "name": self.name,
            "icon": self.icon,
            "lastModified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_cache_dict(cls, data: dict[str, Any]) -> "Category":
        return cls(
            id=CompositeID.from_dict(data),
            source_id=CompositeID.from_dict(data, "source"),
            name=data["name"],
            icon=data["icon"],
            last_modified=datetime.fromisoformat(data["lastModified"]),
        )


@dataclass(frozen=True)
class Tag:
    """A free-form label attachable to recipes of the same source."""

    id: CompositeID
    source_id: CompositeID
    name: str
    last_modified: datetime = field(default_factory=datetime.now)

    def to_record(self, parent: CompositeID | None = None) -> RemoteRecord:
        record = RemoteRecord(
            record_type=TAG_TYPE,
            record_id=self.id,
            fields={"name": self.name, "lastModified": self.last_modified.isoformat()},
            parent_id=parent,
        )
        record.set_ref("sourceID", self.source_id)
        return record

    @classmethod
    def from_record(cls, record: RemoteRecord) -> "Tag":
        _require(record, "name")
        return cls(
            id=record.record_id,
            source_id=_require_ref(record, "sourceID"),
            name=record.fields["name"],
            last_modified=record.get_datetime("lastModified") or datetime.now(),
        )

    def to_cache_dict(self) -> dict[str, Any]:
        return {
            **self.id.to_dict(),
            **self.source_id.to_dict("source"),
            "name": self.name,
            "lastModified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_cache_dict(cls, data: dict[str, Any]) -> "Tag":
        return cls(
            id=CompositeID.from_dict(data),
            source_id=CompositeID.from_dict(data, "source"),
            name=data["name"],
            last_modified=datetime.fromisoformat(data["lastModified"]),
        )


@dataclass(frozen=True)
class RecipeStep:
    step_number: int
    instruction: str
    ingredients: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "instruction": self.instruction,
            "ingredients": list(self.ingredients),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipeStep":
        return cls(
            step_number=data["step_number"],
            instruction=data["instruction"],
            ingredients=tuple(data.get("ingredients", [])),
        )


@dataclass(frozen=True)
class Recipe:
    """A recipe belonging to one source and one category of that source.

    cached_image_path is local-only: it is never sent to the remote store
    and is ignored when comparing recipes.
    """

    id: CompositeID
    source_id: CompositeID
    category_id: CompositeID
    name: str
    duration_minutes: int = 0
    details: str | None = None
    image_blob_ref: str | None = None
    cached_image_path: str | None = field(default=None, compare=False)
    tag_ids: frozenset[CompositeID] = frozenset()
    recipe_steps: tuple[RecipeStep, ...] = ()
    last_modified: datetime = field(default_factory=datetime.now)

    @property
    def ingredients(self) -> list[str]:
        """Unique ingredients across all steps, sorted."""
        return sorted({i for step in self.recipe_steps for i in step.ingredients})

    def to_record(
        self, asset: bytes | None = None, parent: CompositeID | None = None
    ) -> RemoteRecord:
        record = RemoteRecord(
            record_type=RECIPE_TYPE,
            record_id=self.id,
            fields={
                "name": self.name,
                "recipeTime": self.duration_minutes,
                "details": self.details,
                "imageRef": self.image_blob_ref,
                "recipeSteps": json.dumps([s.to_dict() for s in self.recipe_steps]),
                "tagIDs": [t.to_dict() for t in sorted(self.tag_ids, key=str)],
                "lastModified": self.last_modified.isoformat(),
            },
            parent_id=parent,
            asset=asset,
        )
        record.set_ref("sourceID", self.source_id)
        record.set_ref("categoryID", self.category_id)
        return record

    @classmethod
    def from_record(cls, record: RemoteRecord) -> "Recipe":
        _require(record, "name", "recipeTime")
        try:
            steps = json.loads(record.fields.get("recipeSteps") or "[]")
            recipe_steps = tuple(RecipeStep.from_dict(s) for s in steps)
        except (ValueError, KeyError, TypeError) as e:
            raise RecordDecodeError(
                f"Recipe {record.record_id.name} has malformed steps: {e}"
            ) from e

        return cls(
            id=record.record_id,
            source_id=_require_ref(record, "sourceID"),
            category_id=_require_ref(record, "categoryID"),
            name=record.fields["name"],
            duration_minutes=int(record.fields["recipeTime"]),
            details=record.fields.get("details"),
            image_blob_ref=record.fields.get("imageRef"),
            tag_ids=frozenset(
                CompositeID.from_dict(t) for t in record.fields.get("tagIDs") or []
            ),
            recipe_steps=recipe_steps,
            last_modified=record.get_datetime("lastModified") or datetime.now(),
        )

    def to_cache_dict(self) -> dict[str, Any]:
        data = {
            **self.id.to_dict(),
            **self.source_id.to_dict("source"),
            **self.category_id.to_dict("category"),
            "name": self.name,
            "recipeTime": self.duration_minutes,
            "details": self.details,
            "imageRef": self.image_blob_ref,
            "tagIDs": [t.to_dict() for t in sorted(self.tag_ids, key=str)],
            "recipeSteps": [s.to_dict() for s in self.recipe_steps],
            "lastModified": self.last_modified.isoformat(),
        }
        if self.cached_image_path:
            data["cachedImagePath"] = self.cached_image_path
        return data

    @classmethod
    def from_cache_dict(cls, data: dict[str, Any]) -> "Recipe":
        return cls(
            id=CompositeID.from_dict(data),
            source_id=CompositeID.from_dict(data, "source"),
            category_id=CompositeID.from_dict(data, "category"),
            name=data["name"],
            duration_minutes=data["recipeTime"],
            details=data.get("details"),
            image_blob_ref=data.get("imageRef"),
            cached_image_path=data.get("cachedImagePath"),
            tag_ids=frozenset(CompositeID.from_dict(t) for t in data.get("tagIDs", [])),
            recipe_steps=tuple(RecipeStep.from_dict(s) for s in data.get("recipeSteps", [])),
            last_modified=datetime.fromisoformat(data["lastModified"]),
        )


class ShareStatus(Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"


@dataclass(frozen=True)
class ShareState:
    """Sharing state of one source. url is set only when ACTIVE."""

    status: ShareStatus = ShareStatus.NONE
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "url": self.url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShareState":
        return cls(status=ShareStatus(data["status"]), url=data.get("url"))


# Entity type names used in cache file keys
ENTITY_TYPES = {
    "sources": Source,
    "categories": Category,
    "recipes": Recipe,
    "tags": Tag,
}
