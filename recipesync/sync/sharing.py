"""Sharing protocol for sources.

Owner side: none -> pending -> active. A share record referencing the
source's root record is saved together with the root, then re-fetched
until the service publishes its URL. Collaborator side: accept a URL or
leave a share.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from ..catalog.ids import DEFAULT_ZONE, CompositeID
from ..catalog.models import ShareState, ShareStatus, Source
from ..catalog.records import (
    CATEGORY_TYPE,
    RECIPE_TYPE,
    SHARE_TYPE,
    TAG_TYPE,
    RemoteRecord,
    Scope,
)
from ..remote.base import ErrorCode, Predicate, RemoteStoreError
from .coordinator import SyncCoordinator
from .errors import ErrorClass, classify_error, describe_error

logger = logging.getLogger(__name__)

NOT_OWNER_MESSAGE = "Cannot share collections that are already shared with you"
DEFAULT_ZONE_MESSAGE = (
    "Sharing requires the collection to be stored in its own zone. "
    "Please recreate this collection to share it."
)
STOP_NOT_OWNER_MESSAGE = "Only the owner can stop sharing"
LEAVE_OWNER_MESSAGE = "Owners cannot leave their own collection; stop sharing instead"
NO_SHARE_MESSAGE = "No share record found to leave"


class SharePolicyError(Exception):
    """A sharing operation is not allowed for this source."""


class ShareOutcome(Enum):
    ACTIVE = "active"
    PENDING = "pending"  # saved, URL not published yet; retry later
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class ShareResult:
    status: ShareOutcome
    url: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != ShareOutcome.FAILED


def new_share_record(root: RemoteRecord, title: str) -> RemoteRecord:
    """Build a share for root, stored in root's zone."""
    share = RemoteRecord(
        record_type=SHARE_TYPE,
        record_id=CompositeID(
            owner=root.record_id.owner,
            zone=root.record_id.zone,
            name=f"share-{uuid.uuid4()}",
        ),
        fields={"title": title, "publicPermission": "none", "url": None},
    )
    share.set_ref("rootID", root.record_id)
    return share


class ShareManager:
    """Creates, accepts, stops and leaves shares.

    Works on the coordinator's remote store, resolver and state, and calls
    back into the coordinator for every change to the source list.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        url_retry_delay: float = 0.5,
        url_max_retries: int = 1,
    ):
        """Initialize the share manager.

        Args:
            coordinator: Owner of list state.
            url_retry_delay: Seconds to wait before re-fetching a share
                whose URL is not published yet.
            url_max_retries: Re-fetches after the first one.
        """
        self.coordinator = coordinator
        self.remote = coordinator.remote
        self.resolver = coordinator.resolver
        self.state = coordinator.state
        self.url_retry_delay = url_retry_delay
        self.url_max_retries = url_max_retries

    def share_state(self, source: Source) -> ShareState:
        return self.state.get_share_state(source.id)

    def _failed(self, action: str, exc: Exception) -> ShareResult:
        if isinstance(exc, SharePolicyError):
            message = str(exc)
        else:
            message = describe_error(action, exc)
        logger.error(message)
        self.coordinator.last_error = message
        return ShareResult(ShareOutcome.FAILED, error=message)

    # Owner side

    async def create_share(self, source: Source) -> ShareResult:
        """Share a personal source, reusing an existing share if any."""
        try:
            if not self.resolver.is_owner(source):
                raise SharePolicyError(NOT_OWNER_MESSAGE)

            root = await self.remote.fetch(source.id, Scope.OWNED)
            if root.record_id.zone == DEFAULT_ZONE:
                raise SharePolicyError(DEFAULT_ZONE_MESSAGE)

            share = await self._existing_share(root)
            if share is None:
                share = new_share_record(root, source.name)
                root.share_id = share.record_id
                saved = await self.remote.save_batch([share, root], Scope.OWNED)
                share = next(r for r in saved if r.record_type == SHARE_TYPE)
                logger.info(f"Saved share {share.record_id.name} for {source.name}")
            else:
                logger.info(f"Reusing existing share for {source.name}")

            url = await self._await_url(share)
        except Exception as e:
            if classify_error(e) == ErrorClass.TRANSIENT:
                logger.info(f"Sharing {source.name} deferred, network unavailable: {e}")
                return ShareResult(ShareOutcome.PENDING, error=describe_error("share", e))
            return self._failed("share collection", e)

        if url is None:
            logger.warning(f"Share URL for {source.name} not published yet")
            await self.coordinator.mark_source_shared(
                source, ShareState(ShareStatus.PENDING)
            )
            return ShareResult(ShareOutcome.PENDING)

        await self.coordinator.mark_source_shared(
            source, ShareState(ShareStatus.ACTIVE, url)
        )
        await self._attach_children(root)
        return ShareResult(ShareOutcome.ACTIVE, url=url)

    async def _existing_share(self, root: RemoteRecord) -> RemoteRecord | None:
        if root.share_id is None:
            return None
        try:
            return await self.remote.fetch(root.share_id, Scope.OWNED)
        except RemoteStoreError as e:
            if e.code != ErrorCode.NOT_FOUND:
                raise
            logger.info(f"Root references missing share {root.share_id.name}")
            return None

    async def _await_url(self, share: RemoteRecord) -> str | None:
        """Re-fetch the share until it has a URL, with a bounded retry."""
        retries = 0
        while True:
            fetched = await self.remote.fetch(share.record_id, Scope.OWNED)
            url = fetched.fields.get("url")
            if url:
                return url
            if retries >= self.url_max_retries:
                return None
            retries += 1
            await asyncio.sleep(self.url_retry_delay)

    async def _attach_children(self, root: RemoteRecord) -> int:
        """Point every child record of a shared root at it."""
        updated = []
        zone = root.record_id.zone_id
        try:
            for record_type in (CATEGORY_TYPE, RECIPE_TYPE, TAG_TYPE):
                try:
                    records = await self.remote.fetch_all(
                        record_type,
                        Predicate(equals={"sourceID": root.record_id}),
                        None,
                        Scope.OWNED,
                        zone,
                    )
                except RemoteStoreError as e:
                    if classify_error(e) != ErrorClass.STRUCTURAL:
                        raise
                    continue
                for record in records:
                    if record.parent_id is None:
                        record.parent_id = root.record_id
                        updated.append(record)

            if updated:
                await self.remote.save_batch(updated, Scope.OWNED)
        except Exception as e:
            logger.warning(f"Failed to attach child records to share: {e}")
            return 0

        logger.info(f"Attached {len(updated)} child records to share")
        return len(updated)

    async def stop_sharing(self, source: Source) -> ShareResult:
        """Delete the owner's share; collaborators lose access."""
        try:
            if not self.resolver.is_owner(source):
                raise SharePolicyError(STOP_NOT_OWNER_MESSAGE)
            root = await self.remote.fetch(source.id, Scope.OWNED)
            if root.share_id is None:
                logger.info(f"{source.name} has no share; marking unshared")
            else:
                await self.remote.delete(root.share_id, Scope.OWNED)
                logger.info(f"Stopped sharing {source.name}")
        except Exception as e:
            return self._failed("stop sharing", e)

        await self.coordinator.mark_source_unshared(source)
        return ShareResult(ShareOutcome.STOPPED)

    # Collaborator side

    async def accept_share(self, url: str) -> Source | None:
        """Accept a share URL and return the source it grants.

        Returns:
            The shared source, or None if the share could not be accepted
            or its root could not be read.
        """
        try:
            metadata = await self.remote.fetch_share_metadata(url)
            await self.remote.accept_share(metadata)
        except Exception as e:
            self._failed("accept share", e)
            return None
        logger.info(f"Accepted share {metadata.title or url}")

        source = await self._fetch_shared_source(metadata.root_id, metadata.owner)
        await self.coordinator.load_sources()

        if source is not None:
            await self.coordinator.add_source_locally(source)
            self.state.set_share_state(source.id, ShareState(ShareStatus.ACTIVE, url))
            self.coordinator.current_source = source
            self.state.selected_source = source.id
        return source

    async def _fetch_shared_source(
        self, root_id: CompositeID, owner: str
    ) -> Source | None:
        try:
            record = await self.remote.fetch(root_id, Scope.SHARED)
            source = Source.from_record(record)
        except Exception as e:
            logger.warning(f"Could not fetch shared source after accept: {e}")
            return None
        return Source(
            id=source.id,
            name=source.name,
            is_personal=False,
            owner=source.owner or owner or "Shared",
            last_modified=source.last_modified,
        )

    async def leave_share(self, source: Source) -> ShareResult:
        """Remove the caller from someone else's share."""
        try:
            if self.resolver.is_owner(source):
                raise SharePolicyError(LEAVE_OWNER_MESSAGE)
            root = await self.remote.fetch(source.id, Scope.SHARED)
            if root.share_id is None:
                raise SharePolicyError(NO_SHARE_MESSAGE)
            await self.remote.delete(root.share_id, Scope.SHARED)
        except Exception as e:
            return self._failed("leave share", e)

        logger.info(f"Left shared collection {source.name}")
        await self.coordinator.remove_source_locally(source)
        return ShareResult(ShareOutcome.STOPPED)
