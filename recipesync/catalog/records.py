"""Wire-level record shapes exchanged with the remote store."""

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .ids import CompositeID, ZoneID

# Record types known to the remote schema
SOURCE_TYPE = "Source"
CATEGORY_TYPE = "Category"
RECIPE_TYPE = "Recipe"
TAG_TYPE = "Tag"
SHARE_TYPE = "cloudkit.share"


class Scope(Enum):
    """The two remote partitions a caller can address."""

    OWNED = "owned"  # caller's own partition, read-write
    SHARED = "shared"  # partitions granted by other owners


@dataclass
class RemoteRecord:
    """A typed record as stored by the remote service.

    Field values are JSON-compatible. References to other records are
    stored as CompositeID dicts, datetimes as ISO strings.
    """

    record_type: str
    record_id: CompositeID
    fields: dict[str, Any] = field(default_factory=dict)
    share_id: CompositeID | None = None
    parent_id: CompositeID | None = None
    asset: bytes | None = None

    def get_ref(self, key: str) -> CompositeID | None:
        value = self.fields.get(key)
        if not value:
            return None
        return CompositeID.from_dict(value)

    def set_ref(self, key: str, ref: CompositeID) -> None:
        self.fields[key] = ref.to_dict()

    def get_datetime(self, key: str) -> datetime | None:
        value = self.fields.get(key)
        if not value:
            return None
        return datetime.fromisoformat(value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for transport."""
        return {
            "recordType": self.record_type,
            "id": self.record_id.to_dict(),
            "fields": self.fields,
            "share": self.share_id.to_dict() if self.share_id else None,
            "parent": self.parent_id.to_dict() if self.parent_id else None,
            "asset": base64.b64encode(self.asset).decode("ascii") if self.asset else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteRecord":
        """Create from a transport dictionary."""
        return cls(
            record_type=data["recordType"],
            record_id=CompositeID.from_dict(data["id"]),
            fields=dict(data.get("fields") or {}),
            share_id=CompositeID.from_dict(data["share"]) if data.get("share") else None,
            parent_id=CompositeID.from_dict(data["parent"]) if data.get("parent") else None,
            asset=base64.b64decode(data["asset"]) if data.get("asset") else None,
        )


@dataclass
class ShareMetadata:
    """What the service reveals about a share URL before it is accepted."""

    share_id: CompositeID
    root_id: CompositeID
    owner: str
    title: str = ""

    @property
    def zone(self) -> ZoneID:
        return self.root_id.zone_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "shareID": self.share_id.to_dict(),
            "rootID": self.root_id.to_dict(),
            "owner": self.owner,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShareMetadata":
        return cls(
            share_id=CompositeID.from_dict(data["shareID"]),
            root_id=CompositeID.from_dict(data["rootID"]),
            owner=data.get("owner", ""),
            title=data.get("title", ""),
        )
