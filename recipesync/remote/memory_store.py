"""In-process remote store backend.

MemoryBackend plays the role of the remote service and can be shared by
several MemoryRemoteStore clients, one per user, so owner/collaborator
flows can run without a network. Used for local-only mode and tests.
"""

import copy
import logging
from collections import deque
from typing import Any, Callable

from ..catalog.ids import CURRENT_USER, DEFAULT_ZONE, CompositeID, ZoneID
from ..catalog.records import SHARE_TYPE, RemoteRecord, Scope, ShareMetadata
from .base import ErrorCode, Predicate, RemoteStore, RemoteStoreError, SortOrder

logger = logging.getLogger(__name__)

# Longest parent chain followed when checking share visibility
_MAX_HIERARCHY_DEPTH = 8


def _in_shared_hierarchy(record: RemoteRecord, records: dict[str, RemoteRecord]) -> bool:
    """True if record is a share, a shared root, or hangs off one via parents."""
    current: RemoteRecord | None = record
    for _ in range(_MAX_HIERARCHY_DEPTH):
        if current is None:
            return False
        if current.record_type == SHARE_TYPE or current.share_id is not None:
            return True
        if current.parent_id is None:
            return False
        current = records.get(current.parent_id.name)
    return False


class MemoryBackend:
    """Server-side state: zones, records, shares and access grants.

    Records are stored with real owner names; clients translate the
    CURRENT_USER placeholder on the way in and out.
    """

    def __init__(self, share_url_delay: int = 0, url_base: str = "https://share.local"):
        """Initialize the backend.

        Args:
            share_url_delay: Number of share fetches before a saved share
                gets its public URL.
            url_base: Prefix for generated share URLs.
        """
        self.share_url_delay = share_url_delay
        self.url_base = url_base.rstrip("/")
        self.zones: dict[tuple[str, str], dict[str, RemoteRecord]] = {}
        self.record_types: set[str] = set()
        self.grants: dict[str, set[tuple[str, str]]] = {}
        self.share_urls: dict[str, CompositeID] = {}
        self._share_fetches: dict[CompositeID, int] = {}

    def zone_records(self, owner: str, zone: str) -> dict[str, RemoteRecord]:
        if zone == DEFAULT_ZONE:
            return self.zones.setdefault((owner, zone), {})
        try:
            return self.zones[(owner, zone)]
        except KeyError:
            raise RemoteStoreError(
                ErrorCode.ZONE_NOT_FOUND, f"Zone {zone} of {owner} does not exist"
            ) from None

    def touch_share(self, record: RemoteRecord) -> None:
        """Count a share fetch and publish its URL once the delay passes."""
        if record.fields.get("url"):
            return
        seen = self._share_fetches.get(record.record_id, 0)
        if seen >= self.share_url_delay:
            url = f"{self.url_base}/{record.record_id.name}"
            record.fields["url"] = url
            self.share_urls[url] = record.record_id
        else:
            self._share_fetches[record.record_id] = seen + 1


class MemoryRemoteStore(RemoteStore):
    """RemoteStore client view of a MemoryBackend for one user.

    Supports failure injection: set `offline` to make every call fail with
    NETWORK_UNAVAILABLE, or queue specific errors with fail_next().
    """

    def __init__(self, backend: MemoryBackend | None = None, user: str = "local-user"):
        self.backend = backend or MemoryBackend()
        self.user = user
        self.offline = False
        self.calls: list[str] = []
        self._failures: deque[tuple[str | None, Exception]] = deque()

    def fail_next(self, error: Exception, operation: str | None = None) -> None:
        """Make the next call (optionally of one operation) raise error."""
        self._failures.append((operation, error))

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if self.offline:
            raise RemoteStoreError(ErrorCode.NETWORK_UNAVAILABLE, "The network is offline")
        for i, (op, error) in enumerate(self._failures):
            if op is None or op == operation:
                del self._failures[i]
                raise error

    # ID translation between the caller's view and real owner names

    def _real_owner(self, owner: str) -> str:
        return self.user if owner == CURRENT_USER else owner

    def _view_owner(self, owner: str) -> str:
        return CURRENT_USER if owner == self.user else owner

    def _map_ids(self, record: RemoteRecord, mapper: Callable[[str], str]) -> RemoteRecord:
        def map_id(cid: CompositeID | None) -> CompositeID | None:
            if cid is None:
                return None
            return CompositeID(owner=mapper(cid.owner), zone=cid.zone, name=cid.name)

        def map_value(value: Any) -> Any:
            if isinstance(value, dict) and "recordName" in value:
                mapped = dict(value)
                mapped["zoneOwnerName"] = mapper(value.get("zoneOwnerName", CURRENT_USER))
                return mapped
            if isinstance(value, list):
                return [map_value(v) for v in value]
            return value

        mapped = copy.deepcopy(record)
        mapped.record_id = map_id(record.record_id)
        mapped.share_id = map_id(record.share_id)
        mapped.parent_id = map_id(record.parent_id)
        mapped.fields = {k: map_value(v) for k, v in record.fields.items()}
        return mapped

    def _to_real(self, record: RemoteRecord) -> RemoteRecord:
        return self._map_ids(record, self._real_owner)

    def _to_view(self, record: RemoteRecord) -> RemoteRecord:
        return self._map_ids(record, self._view_owner)

    def _granted(self) -> set[tuple[str, str]]:
        return self.backend.grants.setdefault(self.user, set())

    def _zone_for(self, record_id: CompositeID, scope: Scope) -> dict[str, RemoteRecord]:
        owner = self._real_owner(record_id.owner)
        if scope == Scope.OWNED:
            if owner != self.user:
                raise RemoteStoreError(
                    ErrorCode.PERMISSION_FAILURE,
                    f"{record_id} is not in the owned partition",
                )
        elif (owner, record_id.zone) not in self._granted():
            raise RemoteStoreError(
                ErrorCode.ZONE_NOT_FOUND, f"Zone {record_id.zone} is not shared with you"
            )
        return self.backend.zone_records(owner, record_id.zone)

    # RemoteStore

    async def current_user(self) -> str:
        self._check("current_user")
        return self.user

    async def fetch_all(
        self,
        record_type: str,
        predicate: Predicate,
        sort: SortOrder | None,
        scope: Scope,
        zone: ZoneID | None = None,
    ) -> list[RemoteRecord]:
        self._check("fetch_all")
        if record_type not in self.backend.record_types:
            raise RemoteStoreError(
                ErrorCode.UNKNOWN_RECORD_TYPE, f"Did not find record type: {record_type}"
            )

        if scope == Scope.SHARED:
            if zone is None:
                raise RemoteStoreError(
                    ErrorCode.WIDE_QUERY_UNSUPPORTED,
                    "Shared partition does not support zone-wide queries",
                )
            keys = [(self._real_owner(zone.owner), zone.name)]
            if keys[0] not in self._granted():
                raise RemoteStoreError(
                    ErrorCode.ZONE_NOT_FOUND, f"Zone {zone.name} is not shared with you"
                )
        elif zone is not None:
            keys = [(self.user, zone.name)]
        else:
            keys = [k for k in self.backend.zones if k[0] == self.user]

        results = []
        for owner, zone_name in keys:
            records = self.backend.zone_records(owner, zone_name)
            for record in records.values():
                if record.record_type != record_type:
                    continue
                if scope == Scope.SHARED and not _in_shared_hierarchy(record, records):
                    continue
                view = self._to_view(record)
                if predicate.matches(view):
                    results.append(view)

        if sort is not None:
            results.sort(
                key=lambda r: str(r.fields.get(sort.key) or "").casefold(),
                reverse=not sort.ascending,
            )
        return results

    async def fetch(self, record_id: CompositeID, scope: Scope) -> RemoteRecord:
        self._check("fetch")
        records = self._zone_for(record_id, scope)
        record = records.get(record_id.name)
        if record is None or (
            scope == Scope.SHARED and not _in_shared_hierarchy(record, records)
        ):
            raise RemoteStoreError(ErrorCode.NOT_FOUND, f"Record {record_id} not found")
        if record.record_type == SHARE_TYPE:
            self.backend.touch_share(record)
        return self._to_view(record)

    def _store(self, record: RemoteRecord, scope: Scope) -> RemoteRecord:
        records = self._zone_for(record.record_id, scope)
        real = self._to_real(record)
        if real.record_type == SHARE_TYPE and self.backend.share_url_delay == 0:
            self.backend.touch_share(real)
        records[real.record_id.name] = real
        self.backend.record_types.add(real.record_type)
        return self._to_view(real)

    async def save(self, record: RemoteRecord, scope: Scope) -> RemoteRecord:
        self._check("save")
        return self._store(record, scope)

    async def save_batch(
        self, records: list[RemoteRecord], scope: Scope
    ) -> list[RemoteRecord]:
        self._check("save_batch")
        # Validate every target zone before writing anything
        for record in records:
            self._zone_for(record.record_id, scope)
        return [self._store(record, scope) for record in records]

    async def delete(self, record_id: CompositeID, scope: Scope) -> None:
        self._check("delete")
        try:
            records = self._zone_for(record_id, scope)
        except RemoteStoreError as e:
            if e.code == ErrorCode.ZONE_NOT_FOUND and scope == Scope.OWNED:
                return
            raise
        record = records.get(record_id.name)
        if record is None:
            return

        owner = self._real_owner(record_id.owner)
        if record.record_type == SHARE_TYPE and scope == Scope.SHARED:
            # A participant deleting the share only removes their own access
            self._granted().discard((owner, record_id.zone))
            return

        del records[record_id.name]
        if record.record_type != SHARE_TYPE:
            return

        root_ref = record.fields.get("rootID")
        if root_ref:
            root = records.get(root_ref["recordName"])
            if root is not None:
                root.share_id = None
        for grants in self.backend.grants.values():
            grants.discard((owner, record_id.zone))
        logger.debug(f"Share {record_id.name} deleted, access revoked")

    async def ensure_zone(self, zone: ZoneID) -> None:
        self._check("ensure_zone")
        self.backend.zones.setdefault((self.user, zone.name), {})

    async def delete_zone(self, zone: ZoneID, scope: Scope) -> None:
        self._check("delete_zone")
        owner = self._real_owner(zone.owner)
        if scope == Scope.SHARED:
            self._granted().discard((owner, zone.name))
        else:
            self.backend.zones.pop((self.user, zone.name), None)

    async def list_zones(self, scope: Scope) -> list[ZoneID]:
        self._check("list_zones")
        if scope == Scope.SHARED:
            return [ZoneID(owner=o, name=z) for o, z in sorted(self._granted())]
        return [
            ZoneID(owner=CURRENT_USER, name=z)
            for o, z in sorted(self.backend.zones)
            if o == self.user
        ]

    async def fetch_share_metadata(self, url: str) -> ShareMetadata:
        self._check("fetch_share_metadata")
        share_id = self.backend.share_urls.get(url)
        if share_id is None:
            raise RemoteStoreError(ErrorCode.NOT_FOUND, f"No share at {url}")
        share = self.backend.zone_records(share_id.owner, share_id.zone).get(share_id.name)
        if share is None:
            raise RemoteStoreError(ErrorCode.NOT_FOUND, f"Share at {url} was removed")
        view = self._to_view(share)
        return ShareMetadata(
            share_id=view.record_id,
            root_id=CompositeID.from_dict(view.fields["rootID"]),
            owner=share_id.owner,
            title=view.fields.get("title", ""),
        )

    async def accept_share(self, metadata: ShareMetadata) -> None:
        self._check("accept_share")
        owner = self._real_owner(metadata.share_id.owner)
        if owner == self.user:
            raise RemoteStoreError(
                ErrorCode.PERMISSION_FAILURE, "Owners cannot accept their own share"
            )
        self._granted().add((owner, metadata.share_id.zone))
