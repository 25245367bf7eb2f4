"""Remote record store contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..catalog.ids import CompositeID, ZoneID
from ..catalog.records import RemoteRecord, Scope, ShareMetadata

# Lower bound that matches every record. Used instead of an unconditional
# predicate because the service only serves queries on indexed fields.
DISTANT_PAST = datetime(1970, 1, 1)


class ErrorCode(Enum):
    """Failure codes reported by remote store adapters."""

    NETWORK_UNAVAILABLE = "network_unavailable"
    NETWORK_FAILURE = "network_failure"
    TIMEOUT = "timeout"
    DNS_FAILURE = "dns_failure"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"
    ZONE_BUSY = "zone_busy"
    PARTIAL_FAILURE = "partial_failure"
    UNKNOWN_RECORD_TYPE = "unknown_record_type"
    NOT_QUERYABLE = "not_queryable"
    WIDE_QUERY_UNSUPPORTED = "wide_query_unsupported"
    PERMISSION_FAILURE = "permission_failure"
    INVALID_PAYLOAD = "invalid_payload"
    NOT_FOUND = "not_found"
    ZONE_NOT_FOUND = "zone_not_found"
    SERVER_REJECTED = "server_rejected"

    @classmethod
    def parse(cls, value: str | None) -> "ErrorCode":
        try:
            return cls(value)
        except ValueError:
            return cls.SERVER_REJECTED


class RemoteStoreError(Exception):
    """A remote store operation failed.

    Attributes:
        code: What went wrong.
        sub_errors: Per-item errors when code is PARTIAL_FAILURE.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str = "",
        sub_errors: list["RemoteStoreError"] | None = None,
    ):
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value
        self.sub_errors = sub_errors or []

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "partial": [e.to_dict() for e in self.sub_errors],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteStoreError":
        return cls(
            code=ErrorCode.parse(data.get("code")),
            message=data.get("message", ""),
            sub_errors=[cls.from_dict(e) for e in data.get("partial") or []],
        )


@dataclass
class Predicate:
    """Query filter. All given conditions must hold.

    Attributes:
        equals: Reference fields that must equal the given id.
        name_contains: Case-insensitive substring of the "name" field.
        modified_since: Inclusive lower bound on "lastModified".
    """

    equals: dict[str, CompositeID] = field(default_factory=dict)
    name_contains: str | None = None
    modified_since: datetime | None = None

    @classmethod
    def everything(cls) -> "Predicate":
        return cls(modified_since=DISTANT_PAST)

    def matches(self, record: RemoteRecord) -> bool:
        for key, ref in self.equals.items():
            if record.get_ref(key) != ref:
                return False
        if self.name_contains is not None:
            name = record.fields.get("name") or ""
            if self.name_contains.casefold() not in name.casefold():
                return False
        if self.modified_since is not None:
            modified = record.get_datetime("lastModified")
            if modified is None or modified < self.modified_since:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "equals": {k: v.to_dict() for k, v in self.equals.items()},
            "nameContains": self.name_contains,
            "modifiedSince": (
                self.modified_since.isoformat() if self.modified_since else None
            ),
        }


@dataclass
class SortOrder:
    key: str = "name"
    ascending: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "ascending": self.ascending}


BY_NAME = SortOrder()


class RemoteStore(ABC):
    """Abstract partitioned record database.

    Every method may raise RemoteStoreError. Adapters must translate their
    transport failures into the matching ErrorCode.
    """

    @abstractmethod
    async def current_user(self) -> str:
        """Return the caller's user record name."""
        pass

    @abstractmethod
    async def fetch_all(
        self,
        record_type: str,
        predicate: Predicate,
        sort: SortOrder | None,
        scope: Scope,
        zone: ZoneID | None = None,
    ) -> list[RemoteRecord]:
        """Query records of one type.

        Args:
            record_type: Remote record type name.
            predicate: Filter to apply.
            sort: Ordering, or None for no particular order.
            scope: Partition to query.
            zone: Zone to restrict to. None means zone-wide, which the
                shared partition rejects with WIDE_QUERY_UNSUPPORTED.

        Returns:
            Matching records.
        """
        pass

    @abstractmethod
    async def fetch(self, record_id: CompositeID, scope: Scope) -> RemoteRecord:
        """Fetch one record by id. Raises NOT_FOUND if absent."""
        pass

    @abstractmethod
    async def save(self, record: RemoteRecord, scope: Scope) -> RemoteRecord:
        """Create or replace a record, returning the stored version."""
        pass

    async def save_batch(
        self, records: list[RemoteRecord], scope: Scope
    ) -> list[RemoteRecord]:
        """Save several records atomically.

        Default implementation saves one by one; adapters that can do
        better should override.
        """
        return [await self.save(record, scope) for record in records]

    @abstractmethod
    async def delete(self, record_id: CompositeID, scope: Scope) -> None:
        """Delete a record. Deleting an absent record succeeds."""
        pass

    @abstractmethod
    async def ensure_zone(self, zone: ZoneID) -> None:
        """Create a zone in the owned partition if it does not exist."""
        pass

    @abstractmethod
    async def delete_zone(self, zone: ZoneID, scope: Scope) -> None:
        """Delete a zone and everything in it."""
        pass

    @abstractmethod
    async def list_zones(self, scope: Scope) -> list[ZoneID]:
        """List zones visible in a partition."""
        pass

    @abstractmethod
    async def fetch_share_metadata(self, url: str) -> ShareMetadata:
        """Resolve a share URL into its metadata."""
        pass

    @abstractmethod
    async def accept_share(self, metadata: ShareMetadata) -> None:
        """Accept a share, granting the caller access to its zone."""
        pass

    async def close(self) -> None:
        """Release adapter resources."""
        pass
