"""Cache-then-network orchestration for the recipe catalog.

SyncCoordinator owns every in-memory list and every snapshot write. A load
publishes the cached snapshot first, then asks the remote store, then
either replaces and persists the list or classifies the failure and keeps
what it had. Mutations are applied locally, logged, and then sent.
"""

import asyncio
import dataclasses
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from ..cache.local_cache import LocalCache
from ..cache.state_store import AppLocation, StateStore
from ..catalog.ids import CompositeID
from ..catalog.models import Category, Recipe, RecipeStep, ShareState, ShareStatus, Source, Tag
from ..catalog.records import (
    CATEGORY_TYPE,
    RECIPE_TYPE,
    SOURCE_TYPE,
    TAG_TYPE,
    RemoteRecord,
    Scope,
)
from ..remote.base import BY_NAME, ErrorCode, Predicate, RemoteStore, RemoteStoreError
from .errors import ErrorClass, classify_error, describe_error, is_revoked
from .identity import ScopeResolver
from .pending_ops import OperationKind, PendingOperation, PendingOperationLog

logger = logging.getLogger(__name__)


class ListKind(Enum):
    SOURCES = "sources"
    CATEGORIES = "categories"
    RECIPES = "recipes"
    TAGS = "tags"
    COUNTS = "recipeCounts"
    SEARCH = "search"


@dataclass(frozen=True)
class ListKey:
    """Identifies one logical list, e.g. recipes of source S in category C."""

    kind: ListKind
    source_id: CompositeID | None = None
    category_id: CompositeID | None = None
    query: str | None = None


@dataclass(frozen=True)
class ListState:
    """Published state of one list.

    For COUNTS lists items holds (category id, count) pairs.
    """

    items: tuple = ()
    offline: bool = False
    error: str | None = None
    generation: int = 0


class MutationStatus(Enum):
    PENDING = "pending"  # applied locally, remote not confirmed yet
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class MutationResult:
    """Outcome of a create, update or delete."""

    status: MutationStatus
    entity: Any = None
    error: str | None = None
    operation_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != MutationStatus.FAILED


Subscriber = Callable[[ListKey, ListState], None]

SOURCES_KEY = ListKey(ListKind.SOURCES)


def _decode_all(model: Any, records: list[RemoteRecord]) -> list[Any]:
    items = []
    for record in records:
        try:
            items.append(model.from_record(record))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                f"Skipping undecodable {record.record_type} {record.record_id.name}: {e}"
            )
    return items


def _sort_by_name(items: Iterable[Any]) -> list[Any]:
    return sorted(items, key=lambda item: item.name.casefold())


def _sort_sources(sources: Iterable[Source]) -> list[Source]:
    """Owned sources first, then most recently modified first."""
    by_recency = sorted(sources, key=lambda s: s.last_modified, reverse=True)
    return sorted(by_recency, key=lambda s: not s.is_personal)


class SyncCoordinator:
    """Single owner of catalog list state for one process.

    Construct one per account and pass it to whoever needs it. All public
    operations are coroutines and never raise for remote failures; loads
    report through ListState and mutations through MutationResult.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        state: StateStore,
        pending: PendingOperationLog,
        resolver: ScopeResolver | None = None,
        remote_enabled: bool = True,
        rollback_on_permanent_failure: bool = False,
    ):
        """Initialize the coordinator.

        Args:
            remote: Remote record store.
            cache: Snapshot and blob cache.
            state: Persisted key-value state.
            pending: Log of unconfirmed mutations.
            resolver: Ownership router; a default one is created if omitted.
            remote_enabled: False runs in local-only mode.
            rollback_on_permanent_failure: Revert optimistic changes when
                the remote store rejects them permanently.
        """
        self.remote = remote
        self.cache = cache
        self.state = state
        self.pending = pending
        self.resolver = resolver or ScopeResolver()
        self.remote_available = remote_enabled
        self.rollback_on_permanent_failure = rollback_on_permanent_failure

        self.current_user: str | None = None
        self.current_source: Source | None = None
        self.last_error: str | None = None

        self._lists: dict[ListKey, ListState] = {}
        self._generations: dict[ListKey, int] = {}
        self._locks: dict[ListKey, asyncio.Lock] = {}
        self._subscribers: list[Subscriber] = []
        self._removed_sources: set[CompositeID] = set()

    # State publication

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every list publish.

        Returns:
            Function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def list_state(self, key: ListKey) -> ListState:
        return self._lists.get(key, ListState())

    @property
    def sources(self) -> list[Source]:
        return list(self.list_state(SOURCES_KEY).items)

    def categories(self, source: Source) -> list[Category]:
        return list(self.list_state(ListKey(ListKind.CATEGORIES, source.id)).items)

    def recipes(self, source: Source, category: Category | None = None) -> list[Recipe]:
        key = ListKey(ListKind.RECIPES, source.id, category.id if category else None)
        return list(self.list_state(key).items)

    def tags(self, source: Source) -> list[Tag]:
        return list(self.list_state(ListKey(ListKind.TAGS, source.id)).items)

    def recipe_counts(self, source: Source) -> dict[CompositeID, int]:
        return dict(self.list_state(ListKey(ListKind.COUNTS, source.id)).items)

    def _publish(self, key: ListKey, **changes: Any) -> ListState:
        if "items" in changes:
            changes["items"] = tuple(changes["items"])
        state = dataclasses.replace(self.list_state(key), **changes)
        self._lists[key] = state
        for callback in list(self._subscribers):
            callback(key, state)
        return state

    def _next_generation(self, key: ListKey) -> int:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        return generation

    def _is_current(self, key: ListKey, generation: int) -> bool:
        if self._generations.get(key) != generation:
            return False
        return key.source_id is None or key.source_id not in self._removed_sources

    def _lock(self, key: ListKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # Lifecycle

    async def start(self) -> None:
        """Restore cached state, resolve the account and refresh sources."""
        await self._restore_sources()

        if self.remote_available:
            try:
                self.current_user = await self.remote.current_user()
                self.state.current_user = self.current_user
                logger.info(f"Signed in as {self.current_user}")
            except Exception as e:
                error_class = classify_error(e)
                self.current_user = self.state.current_user
                if error_class == ErrorClass.PERMISSION:
                    self.remote_available = False
                    self.last_error = "Remote account not available. Using local storage only."
                    logger.warning(f"Remote account unavailable, local-only mode: {e}")
                elif error_class != ErrorClass.TRANSIENT:
                    self.last_error = describe_error("connect to the remote store", e)
                    logger.error(self.last_error)
        else:
            self.current_user = self.state.current_user

        await self._ensure_personal_zone()
        await self.load_sources()

    async def _ensure_personal_zone(self) -> None:
        if not self.remote_available:
            return
        try:
            await self.remote.ensure_zone(self.resolver.personal_zone_id)
        except Exception as e:
            logger.warning(f"Could not ensure personal zone: {e}")

    async def _restore_sources(self) -> None:
        cached = await self.cache.read_snapshot("sources", None)
        if cached:
            self._publish(SOURCES_KEY, items=cached)
            logger.info(f"Loaded {len(cached)} sources from local cache")
        self._restore_selection()

    def _restore_selection(self) -> None:
        sources = self.sources
        selected = self.state.selected_source
        if selected is not None:
            for source in sources:
                if source.id == selected:
                    self.current_source = source
                    return
        if self.current_source is None or self.current_source not in sources:
            personal = [s for s in sources if s.is_personal]
            self.current_source = (personal or sources or [None])[0]

    # Generic load

    async def _load(
        self,
        key: ListKey,
        source: Source | None,
        action: str,
        read_cache: Callable[[], Awaitable[list[Any] | None]],
        fetch: Callable[[], Awaitable[list[Any]]],
        persist: Callable[[list[Any]], Awaitable[None]],
    ) -> ListState:
        generation = self._next_generation(key)

        cached = await read_cache()
        if cached and self._is_current(key, generation):
            self._publish(key, items=cached)

        if not self.remote_available:
            return self.list_state(key)

        try:
            items = await fetch()
        except Exception as e:
            return await self._load_failed(key, generation, source, action, e, cached)

        if not self._is_current(key, generation):
            logger.debug(f"Discarding stale {key.kind.value} result")
            return self.list_state(key)

        async with self._lock(key):
            # An edit may have taken the lock while this load waited for it.
            if not self._is_current(key, generation):
                logger.debug(f"Discarding {key.kind.value} result superseded by an edit")
                return self.list_state(key)
            await persist(items)
            return self._publish(
                key, items=items, offline=False, error=None, generation=generation
            )

    async def _load_failed(
        self,
        key: ListKey,
        generation: int,
        source: Source | None,
        action: str,
        exc: Exception,
        cached: list[Any] | None,
    ) -> ListState:
        if not self._is_current(key, generation):
            return self.list_state(key)

        if source is not None and not source.is_personal and is_revoked(exc):
            logger.info(f"Access to {source.name} was revoked; removing it locally")
            await self.remove_source_locally(source)
            return self.list_state(key)

        error_class = classify_error(exc)
        if error_class == ErrorClass.TRANSIENT:
            logger.info(f"Offline while trying to {action}: {exc}")
            return self._publish(key, offline=True, generation=generation)

        if error_class in (ErrorClass.STRUCTURAL, ErrorClass.UNSUPPORTED_PARTIAL):
            logger.debug(f"Remote schema not ready to {action}: {exc}")
            return self._publish(
                key, items=cached or [], offline=False, error=None, generation=generation
            )

        message = describe_error(action, exc)
        logger.error(message)
        self.last_error = message
        return self._publish(key, items=cached or [], error=message, generation=generation)

    async def _fetch(
        self,
        source: Source,
        record_type: str,
        predicate: Predicate,
        sort=BY_NAME,
    ) -> list[RemoteRecord]:
        """Query one source's zone, tolerating an unsupported shared query."""
        try:
            return await self.remote.fetch_all(
                record_type,
                predicate,
                sort,
                self.resolver.scope_for(source),
                self.resolver.zone_for(source),
            )
        except RemoteStoreError as e:
            if classify_error(e) != ErrorClass.UNSUPPORTED_PARTIAL:
                raise
            logger.debug(f"Shared partition skipped {record_type} query: {e}")
            return []

    # Sources

    async def load_sources(self) -> ListState:
        """Refresh the source list from both partitions."""

        async def read_cache() -> list[Source] | None:
            return await self.cache.read_snapshot("sources", None)

        async def persist(sources: list[Source]) -> None:
            await self._apply_source_list(sources)

        return await self._load(
            SOURCES_KEY, None, "load collections", read_cache, self._fetch_sources, persist
        )

    async def _fetch_sources(self) -> list[Source]:
        owned = await self._fetch_owned_sources()
        shared = await self._fetch_shared_sources()
        return _sort_sources(owned + shared)

    def _normalize_source(self, source: Source, is_personal: bool) -> Source:
        owner = source.owner
        if (not owner or owner == "Unknown") and self.current_user:
            owner = self.current_user
        return dataclasses.replace(source, is_personal=is_personal, owner=owner)

    async def _fetch_owned_sources(self) -> list[Source]:
        try:
            records = await self.remote.fetch_all(
                SOURCE_TYPE,
                Predicate.everything(),
                None,
                Scope.OWNED,
                self.resolver.personal_zone_id,
            )
        except RemoteStoreError as e:
            if e.code != ErrorCode.ZONE_NOT_FOUND and classify_error(e) != ErrorClass.STRUCTURAL:
                raise
            logger.debug(f"No owned collections yet: {e}")
            return []
        return [self._normalize_source(s, True) for s in _decode_all(Source, records)]

    async def _fetch_shared_sources(self) -> list[Source]:
        try:
            records = await self.remote.fetch_all(
                SOURCE_TYPE, Predicate.everything(), None, Scope.SHARED
            )
        except Exception as e:
            if classify_error(e) not in (
                ErrorClass.UNSUPPORTED_PARTIAL,
                ErrorClass.STRUCTURAL,
            ):
                logger.info(f"Could not load shared collections: {e}")
            records = []

        if not records:
            records = await self._fetch_shared_sources_by_zone()
        return [self._normalize_source(s, False) for s in _decode_all(Source, records)]

    async def _fetch_shared_sources_by_zone(self) -> list[RemoteRecord]:
        records: list[RemoteRecord] = []
        # A listing failure must fail the whole load; an empty result here
        # would prune every shared collection.
        zones = await self.remote.list_zones(Scope.SHARED)

        for zone in zones:
            try:
                records.extend(
                    await self.remote.fetch_all(
                        SOURCE_TYPE, Predicate.everything(), None, Scope.SHARED, zone
                    )
                )
            except Exception as e:
                if not is_revoked(e):
                    raise
                logger.info(f"Shared zone {zone.name} is no longer accessible: {e}")
        return records

    async def _apply_source_list(self, sources: list[Source]) -> None:
        """Persist a fresh source list and drop what disappeared."""
        fetched = {s.id for s in sources}
        for previous in self.sources:
            if previous.id not in fetched and not previous.is_personal:
                logger.info(f"Pruning missing shared collection {previous.name}")
                await self._forget_source(previous)
        self._removed_sources -= fetched

        await self.cache.write_snapshot("sources", None, sources)

        if self.current_source is not None:
            refreshed = [s for s in sources if s.id == self.current_source.id]
            self.current_source = refreshed[0] if refreshed else None
        if self.current_source is None and sources:
            personal = [s for s in sources if s.is_personal]
            self.current_source = (personal or sources)[0]
        self.state.selected_source = self.current_source.id if self.current_source else None

    async def select_source(self, source: Source) -> None:
        """Make source current and load everything it contains."""
        self.current_source = source
        self.state.selected_source = source.id
        logger.info(f"Selected collection {source.name}")

        await self.load_categories(source)
        await self.load_recipe_counts(source)
        await self.load_tags(source)
        await self.load_recipes(source)

    async def load_cached_data(self, source: Source) -> None:
        """Publish everything cached for a source without touching the network."""
        owner = self.resolver.cache_owner(source)
        categories = await self.cache.read_snapshot("categories", owner)
        if categories is not None:
            self._publish(ListKey(ListKind.CATEGORIES, source.id), items=categories)
        counts = await self.cache.read_counts(owner)
        if counts:
            self._publish(ListKey(ListKind.COUNTS, source.id), items=counts.items())
        recipes = await self.cache.read_snapshot("recipes", owner)
        if recipes is not None:
            self._publish(ListKey(ListKind.RECIPES, source.id), items=recipes)
        tags = await self.cache.read_snapshot("tags", owner)
        if tags is not None:
            self._publish(ListKey(ListKind.TAGS, source.id), items=tags)

    # Categories, tags, recipes, counts

    async def load_categories(self, source: Source) -> ListState:
        key = ListKey(ListKind.CATEGORIES, source.id)
        owner = self.resolver.cache_owner(source)

        async def read_cache() -> list[Category] | None:
            return await self.cache.read_snapshot("categories", owner)

        async def fetch() -> list[Category]:
            records = await self._fetch(
                source, CATEGORY_TYPE, Predicate(equals={"sourceID": source.id})
            )
            return _decode_all(Category, records)

        async def persist(categories: list[Category]) -> None:
            await self.cache.write_snapshot("categories", owner, categories)

        return await self._load(key, source, "load categories", read_cache, fetch, persist)

    async def load_tags(self, source: Source) -> ListState:
        key = ListKey(ListKind.TAGS, source.id)
        owner = self.resolver.cache_owner(source)

        async def read_cache() -> list[Tag] | None:
            return await self.cache.read_snapshot("tags", owner)

        async def fetch() -> list[Tag]:
            records = await self._fetch(
                source, TAG_TYPE, Predicate(equals={"sourceID": source.id})
            )
            return _decode_all(Tag, records)

        async def persist(tags: list[Tag]) -> None:
            await self.cache.write_snapshot("tags", owner, tags)

        return await self._load(key, source, "load tags", read_cache, fetch, persist)

    async def _recipes_from_records(self, records: list[RemoteRecord]) -> list[Recipe]:
        recipes = []
        for record in records:
            try:
                recipe = Recipe.from_record(record)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping undecodable recipe {record.record_id.name}: {e}")
                continue
            if record.asset:
                path = await self.cache.write_blob(recipe.id, record.asset)
                recipe = dataclasses.replace(recipe, cached_image_path=str(path))
            else:
                recipe = await self.cache.with_cached_image(recipe)
            recipes.append(recipe)
        return recipes

    async def load_recipes(
        self, source: Source, category: Category | None = None, skip_cache: bool = False
    ) -> ListState:
        """Load recipes of a source, optionally only one category.

        A full load also rewrites every per-category snapshot of the
        source so category views stay consistent.

        Args:
            source: Collection to load.
            category: Optional category narrowing the load.
            skip_cache: Purge the source's cached recipes and images first
                instead of publishing them. The list already in memory stays
                until the fetch replaces it.
        """
        category_id = category.id if category else None
        key = ListKey(ListKind.RECIPES, source.id, category_id)
        owner = self.resolver.cache_owner(source)

        async def read_cache() -> list[Recipe] | None:
            if skip_cache:
                await self.cache.remove_recipes(owner)
                return None
            return await self.cache.read_snapshot("recipes", owner, category_id)

        async def fetch() -> list[Recipe]:
            equals = {"sourceID": source.id}
            if category_id is not None:
                equals["categoryID"] = category_id
            records = await self._fetch(source, RECIPE_TYPE, Predicate(equals=equals))
            return _sort_by_name(await self._recipes_from_records(records))

        async def persist(recipes: list[Recipe]) -> None:
            await self.cache.write_snapshot("recipes", owner, recipes, category_id)
            if category_id is not None:
                return
            for cat in self.categories(source):
                subset = [r for r in recipes if r.category_id == cat.id]
                await self.cache.write_snapshot("recipes", owner, subset, cat.id)
                cat_key = ListKey(ListKind.RECIPES, source.id, cat.id)
                if cat_key in self._lists:
                    self._publish(cat_key, items=subset)

        return await self._load(key, source, "load recipes", read_cache, fetch, persist)

    async def load_recipe_counts(self, source: Source) -> ListState:
        """Count recipes per category from one unsorted fetch."""
        key = ListKey(ListKind.COUNTS, source.id)
        owner = self.resolver.cache_owner(source)

        async def read_cache() -> list[tuple[CompositeID, int]] | None:
            counts = await self.cache.read_counts(owner)
            return list(counts.items()) or None

        async def fetch() -> list[tuple[CompositeID, int]]:
            records = await self._fetch(
                source, RECIPE_TYPE, Predicate(equals={"sourceID": source.id}), sort=None
            )
            counts: dict[CompositeID, int] = {}
            for record in records:
                category_id = record.get_ref("categoryID")
                if category_id is not None:
                    counts[category_id] = counts.get(category_id, 0) + 1
            return list(counts.items())

        async def persist(counts: list[tuple[CompositeID, int]]) -> None:
            await self.cache.write_counts(owner, dict(counts))

        return await self._load(key, source, "count recipes", read_cache, fetch, persist)

    async def search_recipes(self, source: Source, query: str) -> ListState:
        """Find recipes whose name contains query (case-insensitive)."""
        query = query.strip()
        key = ListKey(ListKind.SEARCH, source.id, query=query)
        owner = self.resolver.cache_owner(source)

        async def read_cache() -> list[Recipe] | None:
            recipes = await self.cache.read_snapshot("recipes", owner)
            if recipes is None:
                return None
            return [r for r in recipes if query.casefold() in r.name.casefold()]

        async def fetch() -> list[Recipe]:
            predicate = Predicate(equals={"sourceID": source.id}, name_contains=query)
            records = await self._fetch(source, RECIPE_TYPE, predicate)
            return _sort_by_name(await self._recipes_from_records(records))

        async def persist(recipes: list[Recipe]) -> None:
            return None

        return await self._load(key, source, "search recipes", read_cache, fetch, persist)

    # Local edits

    async def _edit_list(
        self,
        key: ListKey,
        edit: Callable[[list[Any]], list[Any]],
        write: Callable[[list[Any]], Awaitable[None]],
        read: Callable[[], Awaitable[list[Any] | None]],
    ) -> list[Any]:
        """Apply an edit to a list and its snapshot.

        In-flight loads of the list are invalidated so they cannot
        overwrite the edit.

        Returns:
            The list as it was before the edit.
        """
        async with self._lock(key):
            state = self._lists.get(key)
            if state is not None:
                before = list(state.items)
            else:
                before = await read() or []
            after = edit(list(before))
            self._next_generation(key)
            self._publish(key, items=after)
            await write(after)
            return before

    async def _edit_entities(
        self,
        entity_type: str,
        kind: ListKind,
        source: Source | None,
        edit: Callable[[list[Any]], list[Any]],
        category_id: CompositeID | None = None,
    ) -> Callable[[], Awaitable[None]]:
        """Edit one entity list; return a coroutine function undoing it."""
        owner = self.resolver.cache_owner(source) if source else None
        key = ListKey(kind, source.id if source else None, category_id)

        async def read() -> list[Any] | None:
            return await self.cache.read_snapshot(entity_type, owner, category_id)

        async def write(items: list[Any]) -> None:
            await self.cache.write_snapshot(entity_type, owner, items, category_id)

        before = await self._edit_list(key, edit, write, read)

        async def undo() -> None:
            await self._edit_list(key, lambda _: before, write, read)

        return undo

    async def _edit_counts(
        self, source: Source, deltas: dict[CompositeID, int]
    ) -> Callable[[], Awaitable[None]]:
        owner = self.resolver.cache_owner(source)
        key = ListKey(ListKind.COUNTS, source.id)

        async def read() -> list[tuple[CompositeID, int]]:
            return list((await self.cache.read_counts(owner)).items())

        async def write(items: list[tuple[CompositeID, int]]) -> None:
            await self.cache.write_counts(owner, dict(items))

        def edit(items: list[tuple[CompositeID, int]]) -> list[tuple[CompositeID, int]]:
            counts = dict(items)
            for category_id, delta in deltas.items():
                counts[category_id] = max(0, counts.get(category_id, 0) + delta)
            return list(counts.items())

        before = await self._edit_list(key, edit, write, read)

        async def undo() -> None:
            await self._edit_list(key, lambda _: before, write, read)

        return undo

    @staticmethod
    def _upsert(entity: Any, sort: Callable[[Iterable[Any]], list[Any]] = _sort_by_name):
        def edit(items: list[Any]) -> list[Any]:
            return sort([i for i in items if i.id != entity.id] + [entity])

        return edit

    @staticmethod
    def _without(entity_id: CompositeID):
        def edit(items: list[Any]) -> list[Any]:
            return [i for i in items if i.id != entity_id]

        return edit

    # Remote delivery

    async def _send(self, op: PendingOperation) -> None:
        if op.operation == OperationKind.SAVE:
            await self.remote.save(op.record, op.scope)
        else:
            await self.remote.delete(op.record_id, op.scope)

    def _confirm(self, op: PendingOperation) -> None:
        """Mark an operation delivered and drop it from the log."""
        self.pending.mark_confirmed(op.id)
        self.pending.prune()

    async def _commit(
        self,
        action: str,
        source: Source,
        entity: Any,
        operation: OperationKind,
        record: RemoteRecord | None,
        undo: list[Callable[[], Awaitable[None]]],
        touched: Iterable[ListKey] = (),
    ) -> MutationResult:
        """Log a locally applied mutation and deliver it."""
        scope = self.resolver.scope_for(source)
        record_id = record.record_id if record is not None else entity.id
        op = self.pending.append(operation, scope, record_id, source.id, record)

        if not self.remote_available:
            return MutationResult(MutationStatus.PENDING, entity, operation_id=op.id)

        try:
            await self._send(op)
        except Exception as e:
            error_class = classify_error(e)
            if error_class == ErrorClass.NOT_FOUND and operation == OperationKind.DELETE:
                self._confirm(op)
                return MutationResult(MutationStatus.CONFIRMED, entity, operation_id=op.id)

            if error_class == ErrorClass.TRANSIENT:
                self.pending.record_attempt(op.id, str(e))
                for key in touched:
                    if key in self._lists:
                        self._publish(key, offline=True)
                logger.info(f"Queued {action} until the remote store is reachable")
                return MutationResult(MutationStatus.PENDING, entity, operation_id=op.id)

            message = describe_error(action, e)
            logger.error(message)
            self.last_error = message
            self.pending.mark_failed(op.id, message)
            if self.rollback_on_permanent_failure:
                for step in reversed(undo):
                    await step()
                logger.info(f"Reverted local change after failing to {action}")
            return MutationResult(MutationStatus.FAILED, entity, message, op.id)

        self._confirm(op)
        logger.debug(f"Confirmed {action}")
        return MutationResult(MutationStatus.CONFIRMED, entity, operation_id=op.id)

    def _rejected(self, message: str, entity: Any = None) -> MutationResult:
        logger.warning(message)
        self.last_error = message
        return MutationResult(MutationStatus.FAILED, entity, message)

    def is_shared(self, source: Source) -> bool:
        """True if the source is shared from either side."""
        if not source.is_personal:
            return True
        return self.state.get_share_state(source.id).status != ShareStatus.NONE

    def _parent_for(self, source: Source) -> CompositeID | None:
        """Child records of a shared source hang off its root record."""
        return source.id if self.is_shared(source) else None

    async def replay_pending(self) -> dict[str, int]:
        """Resend every pending operation in order.

        Stops at the first transient failure, since the rest would fail
        the same way.

        Returns:
            Counts of confirmed, failed and still pending operations.
        """
        result = {"confirmed": 0, "failed": 0, "pending": 0}
        if not self.remote_available:
            result["pending"] = len(self.pending.get_pending())
            return result

        for op in self.pending.get_pending():
            try:
                await self._send(op)
            except Exception as e:
                error_class = classify_error(e)
                if error_class == ErrorClass.TRANSIENT:
                    self.pending.record_attempt(op.id, str(e))
                    break
                if error_class == ErrorClass.NOT_FOUND and op.operation == OperationKind.DELETE:
                    self.pending.mark_confirmed(op.id)
                    result["confirmed"] += 1
                    continue
                message = describe_error(f"sync {op.record_id.name}", e)
                logger.error(message)
                self.pending.mark_failed(op.id, message)
                result["failed"] += 1
                continue
            self.pending.mark_confirmed(op.id)
            result["confirmed"] += 1

        self.pending.prune()
        result["pending"] = len(self.pending.get_pending())
        logger.info(
            f"Replayed pending operations: {result['confirmed']} confirmed, "
            f"{result['failed']} failed, {result['pending']} pending"
        )
        return result

    # Source mutations

    async def create_source(self, name: str) -> MutationResult:
        """Create a personal source."""
        name = name.strip()
        if not name:
            return self._rejected("Collection name cannot be empty")
        await self._ensure_personal_zone()

        source = Source(
            id=self.resolver.mint_source_id(),
            name=name,
            is_personal=True,
            owner=self.current_user or "Unknown",
        )
        undo = [
            await self._edit_entities(
                "sources", ListKind.SOURCES, None, self._upsert(source, _sort_sources)
            )
        ]
        if self.current_source is None:
            self.current_source = source
            self.state.selected_source = source.id
        logger.info(f"Created collection {name}")
        return await self._commit(
            "create collection",
            source,
            source,
            OperationKind.SAVE,
            source.to_record(),
            undo,
            [SOURCES_KEY],
        )

    async def rename_source(self, source: Source, name: str) -> MutationResult:
        name = name.strip()
        if not name:
            return self._rejected("Collection name cannot be empty", source)
        if not self.resolver.is_owner(source):
            return self._rejected("Only collection owners can rename it.", source)

        renamed = dataclasses.replace(source, name=name, last_modified=datetime.now())
        undo = [
            await self._edit_entities(
                "sources", ListKind.SOURCES, None, self._upsert(renamed, _sort_sources)
            )
        ]
        if self.current_source is not None and self.current_source.id == source.id:
            self.current_source = renamed
        return await self._commit(
            "rename collection",
            renamed,
            renamed,
            OperationKind.SAVE,
            renamed.to_record(),
            undo,
            [SOURCES_KEY],
        )

    async def delete_source(self, source: Source) -> MutationResult:
        """Delete an owned source. Collaborators leave instead."""
        if not self.resolver.is_owner(source):
            return self._rejected(
                "Only collection owners can delete it; leave the share instead.", source
            )

        await self._forget_source(source)
        restore_list = await self._edit_entities(
            "sources", ListKind.SOURCES, None, self._without(source.id)
        )

        async def undo() -> None:
            self._removed_sources.discard(source.id)
            await restore_list()

        if self.current_source is not None and self.current_source.id == source.id:
            self.current_source = None
            self._restore_selection()
            self.state.selected_source = (
                self.current_source.id if self.current_source else None
            )
        logger.info(f"Deleted collection {source.name}")
        return await self._commit(
            "delete collection", source, source, OperationKind.DELETE, None, [undo], [SOURCES_KEY]
        )

    # Category mutations

    async def create_category(self, source: Source, name: str, icon: str) -> MutationResult:
        category = Category(
            id=self.resolver.mint_id(source), source_id=source.id, name=name, icon=icon
        )
        return await self._save_category(source, category, "create category")

    async def update_category(self, source: Source, category: Category) -> MutationResult:
        if category.source_id != source.id:
            return self._rejected("Category does not belong to this collection", category)
        updated = dataclasses.replace(category, last_modified=datetime.now())
        return await self._save_category(source, updated, "update category")

    async def _save_category(
        self, source: Source, category: Category, action: str
    ) -> MutationResult:
        undo = [
            await self._edit_entities(
                "categories", ListKind.CATEGORIES, source, self._upsert(category)
            )
        ]
        if action == "create category":
            undo.append(await self._edit_counts(source, {category.id: 0}))
        return await self._commit(
            action,
            source,
            category,
            OperationKind.SAVE,
            category.to_record(parent=self._parent_for(source)),
            undo,
            [ListKey(ListKind.CATEGORIES, source.id)],
        )

    async def delete_category(self, source: Source, category: Category) -> MutationResult:
        undo = [
            await self._edit_entities(
                "categories", ListKind.CATEGORIES, source, self._without(category.id)
            )
        ]

        def drop_count(items: list[tuple[CompositeID, int]]) -> list[tuple[CompositeID, int]]:
            return [(cid, n) for cid, n in items if cid != category.id]

        owner = self.resolver.cache_owner(source)
        counts_key = ListKey(ListKind.COUNTS, source.id)

        async def read_counts() -> list[tuple[CompositeID, int]]:
            return list((await self.cache.read_counts(owner)).items())

        async def write_counts(items: list[tuple[CompositeID, int]]) -> None:
            await self.cache.write_counts(owner, dict(items))

        await self._edit_list(counts_key, drop_count, write_counts, read_counts)
        return await self._commit(
            "delete category",
            source,
            category,
            OperationKind.DELETE,
            None,
            undo,
            [ListKey(ListKind.CATEGORIES, source.id)],
        )

    # Tag mutations

    async def create_tag(self, source: Source, name: str) -> MutationResult:
        tag = Tag(id=self.resolver.mint_id(source), source_id=source.id, name=name)
        return await self._save_tag(source, tag, "create tag")

    async def update_tag(self, source: Source, tag: Tag) -> MutationResult:
        if tag.source_id != source.id:
            return self._rejected("Tag does not belong to this collection", tag)
        updated = dataclasses.replace(tag, last_modified=datetime.now())
        return await self._save_tag(source, updated, "update tag")

    async def _save_tag(self, source: Source, tag: Tag, action: str) -> MutationResult:
        undo = [await self._edit_entities("tags", ListKind.TAGS, source, self._upsert(tag))]
        return await self._commit(
            action,
            source,
            tag,
            OperationKind.SAVE,
            tag.to_record(parent=self._parent_for(source)),
            undo,
            [ListKey(ListKind.TAGS, source.id)],
        )

    async def delete_tag(self, source: Source, tag: Tag) -> MutationResult:
        undo = [await self._edit_entities("tags", ListKind.TAGS, source, self._without(tag.id))]
        return await self._commit(
            "delete tag",
            source,
            tag,
            OperationKind.DELETE,
            None,
            undo,
            [ListKey(ListKind.TAGS, source.id)],
        )

    # Recipe mutations

    async def create_recipe(
        self,
        source: Source,
        category: Category,
        name: str,
        duration_minutes: int = 0,
        details: str | None = None,
        tag_ids: Iterable[CompositeID] = (),
        recipe_steps: Iterable[RecipeStep] = (),
        image: bytes | None = None,
    ) -> MutationResult:
        if category.source_id != source.id:
            return self._rejected("Category does not belong to this collection")
        recipe = Recipe(
            id=self.resolver.mint_id(source),
            source_id=source.id,
            category_id=category.id,
            name=name,
            duration_minutes=duration_minutes,
            details=details,
            tag_ids=frozenset(tag_ids),
            recipe_steps=tuple(recipe_steps),
        )
        if image is not None:
            recipe = await self._attach_image(recipe, image)
        return await self._save_recipe(source, recipe, None, image, "create recipe")

    async def update_recipe(
        self, source: Source, recipe: Recipe, image: bytes | None = None
    ) -> MutationResult:
        if recipe.source_id != source.id:
            return self._rejected("Recipe does not belong to this collection", recipe)
        previous = self._find_recipe(source, recipe.id)
        updated = dataclasses.replace(recipe, last_modified=datetime.now())
        if image is not None:
            updated = await self._attach_image(updated, image)
        return await self._save_recipe(source, updated, previous, image, "update recipe")

    async def save_image(self, source: Source, recipe: Recipe, data: bytes) -> MutationResult:
        """Store a new image for a recipe and sync it."""
        return await self.update_recipe(source, recipe, image=data)

    async def _attach_image(self, recipe: Recipe, data: bytes) -> Recipe:
        path = await self.cache.write_blob(recipe.id, data)
        return dataclasses.replace(
            recipe,
            image_blob_ref=hashlib.sha256(data).hexdigest(),
            cached_image_path=str(path),
        )

    def _find_recipe(self, source: Source, recipe_id: CompositeID) -> Recipe | None:
        for recipe in self.recipes(source):
            if recipe.id == recipe_id:
                return recipe
        return None

    async def _save_recipe(
        self,
        source: Source,
        recipe: Recipe,
        previous: Recipe | None,
        image: bytes | None,
        action: str,
    ) -> MutationResult:
        undo = [
            await self._edit_entities(
                "recipes", ListKind.RECIPES, source, self._upsert(recipe)
            ),
            await self._edit_entities(
                "recipes",
                ListKind.RECIPES,
                source,
                self._upsert(recipe),
                category_id=recipe.category_id,
            ),
        ]

        deltas: dict[CompositeID, int] = {}
        if previous is None and action == "create recipe":
            deltas[recipe.category_id] = 1
        elif previous is not None and previous.category_id != recipe.category_id:
            deltas[previous.category_id] = -1
            deltas[recipe.category_id] = 1
            undo.append(
                await self._edit_entities(
                    "recipes",
                    ListKind.RECIPES,
                    source,
                    self._without(recipe.id),
                    category_id=previous.category_id,
                )
            )
        if deltas:
            undo.append(await self._edit_counts(source, deltas))

        return await self._commit(
            action,
            source,
            recipe,
            OperationKind.SAVE,
            recipe.to_record(asset=image, parent=self._parent_for(source)),
            undo,
            [ListKey(ListKind.RECIPES, source.id)],
        )

    async def delete_recipe(self, source: Source, recipe: Recipe) -> MutationResult:
        undo = [
            await self._edit_entities(
                "recipes", ListKind.RECIPES, source, self._without(recipe.id)
            ),
            await self._edit_entities(
                "recipes",
                ListKind.RECIPES,
                source,
                self._without(recipe.id),
                category_id=recipe.category_id,
            ),
            await self._edit_counts(source, {recipe.category_id: -1}),
        ]
        await self.cache.remove_blob(recipe.id)
        return await self._commit(
            "delete recipe",
            source,
            recipe,
            OperationKind.DELETE,
            None,
            undo,
            [ListKey(ListKind.RECIPES, source.id)],
        )

    # Source membership

    async def _forget_source(self, source: Source) -> None:
        """Drop every local trace of a source."""
        self._removed_sources.add(source.id)
        for key in [k for k in self._lists if k.source_id == source.id]:
            self._next_generation(key)
            del self._lists[key]
        await self.cache.remove_source(self.resolver.cache_owner(source))
        self.state.clear_share_state(source.id)
        self.pending.discard_source(source.id)

    async def remove_source_locally(self, source: Source) -> bool:
        """Remove a collaborator's view of a shared source.

        Returns:
            False for sources the caller owns, which are never removed here.
        """
        if self.resolver.is_owner(source):
            return False

        if self.remote_available:
            try:
                await self.remote.delete_zone(self.resolver.zone_for(source), Scope.SHARED)
            except Exception as e:
                logger.debug(f"Shared zone removal for {source.name} ignored: {e}")

        await self._forget_source(source)
        await self._edit_entities("sources", ListKind.SOURCES, None, self._without(source.id))
        if self.current_source is not None and self.current_source.id == source.id:
            self.current_source = None
            self._restore_selection()
            self.state.selected_source = (
                self.current_source.id if self.current_source else None
            )
        logger.info(f"Removed shared collection {source.name} locally")
        return True

    async def add_source_locally(self, source: Source) -> None:
        """Insert a source (e.g. one just accepted) if the list lacks it."""
        self._removed_sources.discard(source.id)
        if any(s.id == source.id for s in self.sources):
            return
        await self._edit_entities(
            "sources", ListKind.SOURCES, None, self._upsert(source, _sort_sources)
        )

    async def mark_source_shared(self, source: Source, share_state: ShareState) -> None:
        self.state.set_share_state(source.id, share_state)
        self._publish(SOURCES_KEY)

    async def mark_source_unshared(self, source: Source) -> None:
        """Demote a source after its share ended."""
        self.state.clear_share_state(source.id)
        if not self.resolver.is_owner(source):
            await self.remove_source_locally(source)
            return
        self._publish(SOURCES_KEY)

    async def reset_account(self) -> None:
        """Delete all owned remote data and every local trace of it."""
        if self.remote_available:
            try:
                await self.remote.delete_zone(self.resolver.personal_zone_id, Scope.OWNED)
                logger.info(f"Deleted personal zone {self.resolver.personal_zone}")
            except Exception as e:
                logger.warning(f"Personal zone deletion failed: {e}")

        await self.cache.clear()
        self.state.clear()
        self.pending.clear()
        for key in list(self._lists):
            self._next_generation(key)
        self._lists.clear()
        self._removed_sources.clear()
        self.current_source = None
        self.last_error = None
        self._publish(SOURCES_KEY, items=[], offline=False, error=None)
        logger.info("Account reset complete")

    # Navigation state

    def remember_recipe(self, recipe: Recipe) -> None:
        self.state.last_viewed_recipe = recipe.id

    async def last_viewed_recipe(self) -> Recipe | None:
        """The last viewed recipe, if it is still cached."""
        recipe_id = self.state.last_viewed_recipe
        if recipe_id is None:
            return None
        for source in self.sources:
            if source.id.zone_id != recipe_id.zone_id:
                continue
            owner = self.resolver.cache_owner(source)
            for recipe in self.recipes(source) or (
                await self.cache.read_snapshot("recipes", owner) or []
            ):
                if recipe.id == recipe_id:
                    return recipe
        return None

    def save_location(self, location: AppLocation) -> None:
        self.state.app_location = location

    def last_location(self) -> AppLocation | None:
        return self.state.app_location

    def status(self) -> dict[str, Any]:
        """Summary for diagnostics and the CLI."""
        return {
            "current_user": self.current_user,
            "remote_available": self.remote_available,
            "current_source": self.current_source.name if self.current_source else None,
            "sources": len(self.sources),
            "offline_lists": sum(1 for s in self._lists.values() if s.offline),
            "pending": self.pending.get_stats(),
            "last_error": self.last_error,
        }
