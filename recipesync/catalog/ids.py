"""Composite record identifiers and cache-safe tokens."""

import re
import uuid
from dataclasses import dataclass
from typing import Any

# Owner name the remote service uses for the caller's own partition
CURRENT_USER = "__defaultOwner__"

# Zone every partition has; records stored here cannot be shared
DEFAULT_ZONE = "_defaultZone"

_UNSAFE = re.compile(r"[^0-9A-Za-z_\-]")


def sanitize(value: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with '-'.

    Args:
        value: Raw identifier component.

    Returns:
        Filesystem and keyspace safe token.
    """
    return _UNSAFE.sub("-", value)


@dataclass(frozen=True)
class ZoneID:
    """A named zone inside one owner's partition."""

    owner: str
    name: str

    def to_dict(self) -> dict[str, str]:
        return {"zoneName": self.name, "zoneOwnerName": self.owner}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ZoneID":
        return cls(
            owner=data.get("zoneOwnerName", CURRENT_USER),
            name=data["zoneName"],
        )


@dataclass(frozen=True)
class CompositeID:
    """Globally unique record identifier: (owner, zone, name).

    Equality is structural over all three components.
    """

    owner: str
    zone: str
    name: str

    @property
    def zone_id(self) -> ZoneID:
        return ZoneID(owner=self.owner, name=self.zone)

    @classmethod
    def mint(cls, zone: ZoneID) -> "CompositeID":
        """Create a fresh identifier inside a zone."""
        return cls(owner=zone.owner, zone=zone.name, name=str(uuid.uuid4()).upper())

    def token(self) -> str:
        """Cache key token for this identifier."""
        return "_".join(sanitize(part) for part in (self.owner, self.zone, self.name))

    def to_dict(self, prefix: str = "") -> dict[str, str]:
        """Serialize as a flat triple.

        Args:
            prefix: Optional key prefix for foreign keys, e.g. "source"
                yields sourceRecordName/sourceZoneName/sourceZoneOwnerName.
        """
        if prefix:
            return {
                f"{prefix}RecordName": self.name,
                f"{prefix}ZoneName": self.zone,
                f"{prefix}ZoneOwnerName": self.owner,
            }
        return {
            "recordName": self.name,
            "zoneName": self.zone,
            "zoneOwnerName": self.owner,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], prefix: str = "") -> "CompositeID":
        """Deserialize a flat triple written by to_dict()."""
        if prefix:
            return cls(
                owner=data.get(f"{prefix}ZoneOwnerName", CURRENT_USER),
                zone=data.get(f"{prefix}ZoneName", DEFAULT_ZONE),
                name=data[f"{prefix}RecordName"],
            )
        return cls(
            owner=data.get("zoneOwnerName", CURRENT_USER),
            zone=data.get("zoneName", DEFAULT_ZONE),
            name=data["recordName"],
        )

    def __str__(self) -> str:
        return f"{self.owner}/{self.zone}/{self.name}"
