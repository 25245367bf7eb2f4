"""Tests for cache-then-network loading and optimistic mutations."""

import asyncio
import dataclasses
from pathlib import Path
from unittest.mock import patch

import pytest

from recipesync.cache import AppLocation, LocationKind
from recipesync.catalog import CompositeID, Source
from recipesync.catalog.records import CATEGORY_TYPE, Scope
from recipesync.remote import ErrorCode, Predicate, RemoteStoreError
from recipesync.sync import ListKey, ListKind, MutationStatus, ScopeResolver


class DeviceResolver(ScopeResolver):
    """Keeps snapshots under a namespace other than the source id."""

    def cache_owner(self, source):
        return CompositeID("device", source.id.zone, source.id.name)


async def started(coordinator):
    await coordinator.start()
    return coordinator


async def seed(coordinator):
    """Create a collection with one category and one recipe."""
    source = (await coordinator.create_source("Family")).entity
    category = (await coordinator.create_category(source, "Dinner", "moon")).entity
    recipe = (
        await coordinator.create_recipe(
            source, category, "Pasta", duration_minutes=25, details="Boil water"
        )
    ).entity
    return source, category, recipe


class TestStartup:
    """Tests for account resolution and the initial source load."""

    @pytest.mark.asyncio
    async def test_fresh_account(self, make_coordinator):
        coordinator = await started(make_coordinator())

        state = coordinator.list_state(ListKey(ListKind.SOURCES))
        assert coordinator.current_user == "alice"
        assert coordinator.remote_available
        assert state.items == ()
        assert not state.offline
        assert state.error is None

    @pytest.mark.asyncio
    async def test_account_unavailable_switches_to_local_only(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.remote.fail_next(
            RemoteStoreError(ErrorCode.PERMISSION_FAILURE, "no account"), "current_user"
        )

        await coordinator.start()

        assert not coordinator.remote_available
        assert coordinator.last_error == "Remote account not available. Using local storage only."
        assert coordinator.remote.calls == ["current_user"]

    @pytest.mark.asyncio
    async def test_local_only_mode_never_calls_remote(self, make_coordinator):
        coordinator = await started(make_coordinator(remote_enabled=False))

        result = await coordinator.create_source("Offline")

        assert result.status == MutationStatus.PENDING
        assert coordinator.remote.calls == []
        assert coordinator.pending.get_stats()["pending"] == 1


class TestLoading:
    """Tests for load operations."""

    @pytest.mark.asyncio
    async def test_create_then_reload_elsewhere(self, make_coordinator):
        """Data written by one device is read back by another."""
        writer = await started(make_coordinator())
        source, category, recipe = await seed(writer)

        reader = await started(make_coordinator(home="alice-laptop"))
        await reader.select_source(reader.sources[0])

        assert reader.sources == [source]
        assert reader.categories(source) == [category]
        assert reader.recipes(source) == [recipe]
        assert reader.recipe_counts(source) == {category.id: 1}

    @pytest.mark.asyncio
    async def test_cache_survives_outage(self, make_coordinator):
        online = await started(make_coordinator())
        source, category, recipe = await seed(online)
        await online.select_source(source)

        restarted = make_coordinator()
        restarted.remote.offline = True
        await restarted.start()
        await restarted.select_source(restarted.current_source)

        categories = restarted.list_state(ListKey(ListKind.CATEGORIES, source.id))
        assert restarted.current_user == "alice"
        assert restarted.list_state(ListKey(ListKind.SOURCES)).offline
        assert restarted.sources == [source]
        assert categories.items == (category,)
        assert categories.offline
        assert categories.error is None
        assert restarted.recipes(source) == [recipe]
        assert restarted.last_error is None

    @pytest.mark.asyncio
    async def test_structural_failure_is_empty_not_offline(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        coordinator.remote.fail_next(
            RemoteStoreError(ErrorCode.UNKNOWN_RECORD_TYPE), "fetch_all"
        )

        state = await coordinator.load_tags(source)

        assert state.items == ()
        assert not state.offline
        assert state.error is None
        assert coordinator.last_error is None

    @pytest.mark.asyncio
    async def test_structural_failure_keeps_cache(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        coordinator.remote.fail_next(
            RemoteStoreError(ErrorCode.NOT_QUERYABLE), "fetch_all"
        )

        state = await coordinator.load_categories(source)

        assert state.items == (category,)
        assert not state.offline

    @pytest.mark.asyncio
    async def test_permission_failure_is_surfaced(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        coordinator.remote.fail_next(
            RemoteStoreError(ErrorCode.PERMISSION_FAILURE), "fetch_all"
        )

        state = await coordinator.load_categories(source)

        assert state.error.startswith("Failed to load categories")
        assert coordinator.last_error == state.error
        assert state.items == (category,)

    @pytest.mark.asyncio
    async def test_undecodable_records_are_skipped(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        broken = category.to_record()
        broken.record_id = CompositeID(broken.record_id.owner, broken.record_id.zone, "BROKEN")
        del broken.fields["icon"]
        await coordinator.remote.save(broken, Scope.OWNED)

        state = await coordinator.load_categories(source)

        assert state.items == (category,)
        assert state.error is None

    @pytest.mark.asyncio
    async def test_full_load_writes_category_snapshots(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, recipe = await seed(coordinator)

        await coordinator.select_source(source)

        path = coordinator.cache.snapshot_path("recipes", source.id, category.id)
        assert path.exists()
        assert await coordinator.cache.read_snapshot("recipes", source.id, category.id) == [recipe]

        state = await coordinator.load_recipes(source, category)
        assert state.items == (recipe,)

    @pytest.mark.asyncio
    async def test_recipe_counts_from_remote(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        await coordinator.create_recipe(source, category, "Risotto")

        state = await coordinator.load_recipe_counts(source)

        assert dict(state.items) == {category.id: 2}

    @pytest.mark.asyncio
    async def test_load_cached_data(self, make_coordinator):
        online = await started(make_coordinator())
        source, category, recipe = await seed(online)
        tag = (await online.create_tag(source, "Quick")).entity

        restarted = make_coordinator(remote_enabled=False)
        await restarted.start()
        await restarted.load_cached_data(source)

        assert restarted.categories(source) == [category]
        assert restarted.recipes(source) == [recipe]
        assert restarted.tags(source) == [tag]
        assert restarted.recipe_counts(source) == {category.id: 1}

    @pytest.mark.asyncio
    async def test_cached_data_uses_cache_namespace(self, make_coordinator):
        online = await started(make_coordinator(resolver=DeviceResolver()))
        source, category, recipe = await seed(online)
        online.remember_recipe(recipe)

        restarted = make_coordinator(remote_enabled=False, resolver=DeviceResolver())
        await restarted.start()
        await restarted.load_cached_data(source)
        fresh = await started(make_coordinator(remote_enabled=False, resolver=DeviceResolver()))

        assert await restarted.cache.read_snapshot("categories", source.id) is None
        assert restarted.categories(source) == [category]
        assert restarted.recipes(source) == [recipe]
        assert restarted.recipe_counts(source) == {category.id: 1}
        assert fresh.recipes(source) == []
        assert await fresh.last_viewed_recipe() == recipe

    @pytest.mark.asyncio
    async def test_refresh_replaces_cached_recipes(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, recipe = await seed(coordinator)
        stale = dataclasses.replace(recipe, name="Old Pasta")
        await coordinator.cache.write_snapshot("recipes", source.id, [stale])
        await coordinator.cache.write_snapshot("recipes", source.id, [stale], category.id)
        await coordinator.cache.write_blob(recipe.id, b"old image")
        seen = []
        coordinator.subscribe(lambda key, state: seen.extend(state.items))

        state = await coordinator.load_recipes(source, skip_cache=True)

        assert stale not in seen
        assert [r.name for r in state.items] == ["Pasta"]
        assert await coordinator.cache.read_blob_path(recipe.id) is None
        cached = await coordinator.cache.read_snapshot("recipes", source.id, category.id)
        assert [r.name for r in cached] == ["Pasta"]

    @pytest.mark.asyncio
    async def test_refresh_offline_keeps_list_but_drops_cache(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, _, recipe = await seed(coordinator)
        await coordinator.load_recipes(source)
        coordinator.remote.offline = True

        state = await coordinator.load_recipes(source, skip_cache=True)

        assert state.offline
        assert state.items == (recipe,)
        assert await coordinator.cache.read_snapshot("recipes", source.id) is None

    @pytest.mark.asyncio
    async def test_search(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, recipe = await seed(coordinator)
        await coordinator.create_recipe(source, category, "Soup")
        await coordinator.select_source(source)

        found = await coordinator.search_recipes(source, " PAS ")
        coordinator.remote.offline = True
        cached = await coordinator.search_recipes(source, "sou")

        assert found.items == (recipe,)
        assert [r.name for r in cached.items] == ["Soup"]
        assert cached.offline

    @pytest.mark.asyncio
    async def test_stale_load_is_discarded(self, make_coordinator):
        """A load that finishes after a local edit must not overwrite it."""
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        await coordinator.create_category(source, "Breakfast", "sun")

        started_fetch = asyncio.Event()
        release = asyncio.Event()
        fetch_all = coordinator.remote.fetch_all

        async def slow_fetch_all(*args, **kwargs):
            records = await fetch_all(*args, **kwargs)
            started_fetch.set()
            await release.wait()
            return records

        with patch.object(coordinator.remote, "fetch_all", slow_fetch_all):
            load = asyncio.create_task(coordinator.load_categories(source))
            await started_fetch.wait()

            await coordinator.create_category(source, "Dinner", "moon")
            release.set()
            await load

        assert [c.name for c in coordinator.categories(source)] == ["Breakfast", "Dinner"]

    @pytest.mark.asyncio
    async def test_load_queued_behind_edit_is_discarded(self, make_coordinator):
        """A load waiting on the list lock while an edit holds it keeps the edit."""
        writer = await started(make_coordinator())
        source = (await writer.create_source("Family")).entity
        await writer.create_category(source, "Bread", "sun")
        coordinator = await started(make_coordinator(home="alice-tablet"))

        in_fetch, release_fetch, fetched = asyncio.Event(), asyncio.Event(), asyncio.Event()
        in_read, release_read = asyncio.Event(), asyncio.Event()
        fetch_all = coordinator.remote.fetch_all
        read_snapshot = coordinator.cache.read_snapshot

        async def slow_fetch_all(*args, **kwargs):
            records = await fetch_all(*args, **kwargs)
            in_fetch.set()
            await release_fetch.wait()
            fetched.set()
            return records

        async def slow_read_snapshot(*args, **kwargs):
            in_read.set()
            await release_read.wait()
            return await read_snapshot(*args, **kwargs)

        with patch.object(coordinator.remote, "fetch_all", slow_fetch_all):
            load = asyncio.create_task(coordinator.load_categories(source))
            await in_fetch.wait()

            with patch.object(coordinator.cache, "read_snapshot", slow_read_snapshot):
                edit = asyncio.create_task(coordinator.create_category(source, "Soups", "moon"))
                await in_read.wait()
                release_fetch.set()
                await fetched.wait()
                release_read.set()
                await edit
            await load

        cached = await coordinator.cache.read_snapshot("categories", source.id)
        assert "Soups" in [c.name for c in coordinator.categories(source)]
        assert "Soups" in [c.name for c in cached]

    @pytest.mark.asyncio
    async def test_subscribers_receive_publishes(self, make_coordinator):
        coordinator = await started(make_coordinator())
        seen = []
        unsubscribe = coordinator.subscribe(lambda key, state: seen.append(key.kind))

        source = (await coordinator.create_source("Family")).entity
        unsubscribe()
        await coordinator.create_tag(source, "Quick")

        assert seen == [ListKind.SOURCES]


class TestMutations:
    """Tests for optimistic writes and pending delivery."""

    @pytest.mark.asyncio
    async def test_create_is_confirmed_and_cached(self, make_coordinator):
        coordinator = await started(make_coordinator())

        source, category, recipe = await seed(coordinator)

        assert coordinator.current_source == source
        assert coordinator.state.selected_source == source.id
        assert await coordinator.cache.read_snapshot("sources", None) == [source]
        assert await coordinator.cache.read_snapshot("categories", source.id) == [category]
        assert coordinator.recipe_counts(source) == {category.id: 1}
        assert coordinator.pending.get_stats()["total"] == 0

    @pytest.mark.asyncio
    async def test_empty_source_name_rejected(self, make_coordinator):
        coordinator = await started(make_coordinator())

        result = await coordinator.create_source("   ")

        assert result.status == MutationStatus.FAILED
        assert coordinator.sources == []

    @pytest.mark.asyncio
    async def test_offline_write_is_pending_then_replayed(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        coordinator.remote.offline = True

        result = await coordinator.create_category(source, "Dinner", "moon")

        state = coordinator.list_state(ListKey(ListKind.CATEGORIES, source.id))
        assert result.status == MutationStatus.PENDING
        assert state.items == (result.entity,)
        assert state.offline
        assert coordinator.pending.get(result.operation_id).attempts == 1

        coordinator.remote.offline = False
        replayed = await coordinator.replay_pending()

        assert replayed == {"confirmed": 1, "failed": 0, "pending": 0}
        assert coordinator.pending.get(result.operation_id) is None
        assert coordinator.pending.get_stats()["total"] == 0
        remote = await coordinator.remote.fetch_all(
            CATEGORY_TYPE, Predicate(), None, Scope.OWNED
        )
        assert [r.fields["name"] for r in remote] == ["Dinner"]

    @pytest.mark.asyncio
    async def test_replay_stops_at_transient_failure(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        coordinator.remote.offline = True
        await coordinator.create_tag(source, "Quick")
        await coordinator.create_tag(source, "Vegan")

        replayed = await coordinator.replay_pending()

        assert replayed == {"confirmed": 0, "failed": 0, "pending": 2}
        assert coordinator.remote.calls.count("save") == 4

    @pytest.mark.asyncio
    async def test_pending_survives_restart(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        coordinator.remote.offline = True
        await coordinator.create_tag(source, "Quick")

        restarted = await started(make_coordinator())
        replayed = await restarted.replay_pending()
        await restarted.load_tags(source)

        assert replayed["confirmed"] == 1
        assert [t.name for t in restarted.tags(source)] == ["Quick"]

    @pytest.mark.asyncio
    async def test_permanent_failure_keeps_local_change(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        coordinator.remote.fail_next(RemoteStoreError(ErrorCode.SERVER_REJECTED), "save")

        result = await coordinator.create_tag(source, "Quick")

        assert result.status == MutationStatus.FAILED
        assert result.error.startswith("Failed to create tag")
        assert [t.name for t in coordinator.tags(source)] == ["Quick"]
        assert coordinator.pending.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_rolls_back_when_configured(self, make_coordinator):
        coordinator = await started(make_coordinator(rollback_on_permanent_failure=True))
        source, category, _ = await seed(coordinator)
        coordinator.remote.fail_next(RemoteStoreError(ErrorCode.SERVER_REJECTED), "save")

        result = await coordinator.create_recipe(source, category, "Soup")

        assert not result.ok
        assert [r.name for r in coordinator.recipes(source)] == ["Pasta"]
        assert coordinator.recipe_counts(source) == {category.id: 1}
        cached = await coordinator.cache.read_snapshot("recipes", source.id)
        assert [r.name for r in cached] == ["Pasta"]

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, recipe = await seed(coordinator)

        first = await coordinator.delete_recipe(source, recipe)
        second = await coordinator.delete_recipe(source, recipe)
        coordinator.remote.fail_next(RemoteStoreError(ErrorCode.NOT_FOUND), "delete")
        third = await coordinator.delete_recipe(source, recipe)

        assert first.status == MutationStatus.CONFIRMED
        assert second.status == MutationStatus.CONFIRMED
        assert third.status == MutationStatus.CONFIRMED
        assert coordinator.recipes(source) == []
        assert coordinator.recipe_counts(source) == {category.id: 0}

    @pytest.mark.asyncio
    async def test_move_recipe_between_categories(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, dinner, recipe = await seed(coordinator)
        lunch = (await coordinator.create_category(source, "Lunch", "sun")).entity

        moved = dataclasses.replace(recipe, category_id=lunch.id)
        result = await coordinator.update_recipe(source, moved)

        assert result.ok
        assert coordinator.recipe_counts(source) == {dinner.id: 0, lunch.id: 1}
        assert coordinator.recipes(source, dinner) == []
        assert [r.id for r in coordinator.recipes(source, lunch)] == [recipe.id]

    @pytest.mark.asyncio
    async def test_update_and_delete_category(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)

        renamed = await coordinator.update_category(
            source, dataclasses.replace(category, name="Supper")
        )
        await coordinator.load_categories(source)
        assert renamed.status == MutationStatus.CONFIRMED
        assert [c.name for c in coordinator.categories(source)] == ["Supper"]

        deleted = await coordinator.delete_category(source, category)

        assert deleted.status == MutationStatus.CONFIRMED
        assert coordinator.categories(source) == []
        assert coordinator.recipe_counts(source) == {}

    @pytest.mark.asyncio
    async def test_update_and_delete_tag(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity
        other = (await coordinator.create_source("Other")).entity
        tag = (await coordinator.create_tag(source, "Quick")).entity

        foreign = await coordinator.update_tag(other, tag)
        renamed = await coordinator.update_tag(source, dataclasses.replace(tag, name="Fast"))
        await coordinator.load_tags(source)
        names = [t.name for t in coordinator.tags(source)]
        deleted = await coordinator.delete_tag(source, tag)

        assert foreign.status == MutationStatus.FAILED
        assert renamed.ok
        assert names == ["Fast"]
        assert deleted.ok
        assert coordinator.tags(source) == []

    @pytest.mark.asyncio
    async def test_category_must_belong_to_source(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        other = (await coordinator.create_source("Other")).entity

        result = await coordinator.create_recipe(other, category, "Wrong")

        assert result.status == MutationStatus.FAILED
        assert coordinator.recipes(other) == []

    @pytest.mark.asyncio
    async def test_image_is_cached_and_synced(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, recipe = await seed(coordinator)

        result = await coordinator.save_image(source, recipe, b"\x89PNG-data")

        path = Path(result.entity.cached_image_path)
        assert path.read_bytes() == b"\x89PNG-data"
        assert result.entity.image_blob_ref is not None

        other_device = await started(make_coordinator(home="alice-tablet"))
        await other_device.load_recipes(source)
        [loaded] = other_device.recipes(source)
        assert Path(loaded.cached_image_path).read_bytes() == b"\x89PNG-data"

    @pytest.mark.asyncio
    async def test_delete_recipe_removes_image(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        result = await coordinator.create_recipe(source, category, "Cake", image=b"img")

        await coordinator.delete_recipe(source, result.entity)

        assert await coordinator.cache.read_blob_path(result.entity.id) is None


class TestSources:
    """Tests for collection-level operations."""

    @pytest.mark.asyncio
    async def test_sources_sorted_owned_first(self, make_coordinator):
        coordinator = await started(make_coordinator())
        await coordinator.create_source("Older")
        await coordinator.create_source("Newer")

        state = await coordinator.load_sources()

        assert [s.name for s in state.items] == ["Newer", "Older"]

    @pytest.mark.asyncio
    async def test_rename(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source = (await coordinator.create_source("Family")).entity

        result = await coordinator.rename_source(source, "Household")

        assert result.status == MutationStatus.CONFIRMED
        assert coordinator.current_source.name == "Household"
        assert [s.name for s in (await coordinator.load_sources()).items] == ["Household"]

    @pytest.mark.asyncio
    async def test_collaborator_cannot_rename_or_delete(self, make_coordinator):
        coordinator = await started(make_coordinator(user="bob"))
        shared = Source(
            CompositeID("alice", "PersonalSources", "S1"), "Hers", False, "alice"
        )
        calls_before = list(coordinator.remote.calls)

        renamed = await coordinator.rename_source(shared, "Mine now")
        deleted = await coordinator.delete_source(shared)

        assert renamed.status == MutationStatus.FAILED
        assert renamed.error == "Only collection owners can rename it."
        assert deleted.status == MutationStatus.FAILED
        assert coordinator.remote.calls == calls_before

    @pytest.mark.asyncio
    async def test_delete_source_clears_local_data(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, category, _ = await seed(coordinator)
        keep = (await coordinator.create_source("Keep")).entity

        result = await coordinator.delete_source(source)

        assert result.ok
        assert coordinator.sources == [keep]
        assert coordinator.current_source == keep
        assert coordinator.categories(source) == []
        assert await coordinator.cache.read_snapshot("categories", source.id) is None

    @pytest.mark.asyncio
    async def test_delete_source_clears_cache_namespace_and_images(self, make_coordinator):
        coordinator = await started(make_coordinator(resolver=DeviceResolver()))
        source, category, _ = await seed(coordinator)
        cake = (await coordinator.create_recipe(source, category, "Cake", image=b"img")).entity
        owner = coordinator.resolver.cache_owner(source)

        await coordinator.delete_source(source)

        assert await coordinator.cache.read_snapshot("categories", owner) is None
        assert await coordinator.cache.read_snapshot("recipes", owner) is None
        assert await coordinator.cache.read_counts(owner) == {}
        assert await coordinator.cache.read_blob_path(cake.id) is None

    @pytest.mark.asyncio
    async def test_reset_account(self, make_coordinator, backend):
        coordinator = await started(make_coordinator())
        await seed(coordinator)

        await coordinator.reset_account()

        assert coordinator.sources == []
        assert coordinator.current_source is None
        assert coordinator.state.current_user is None
        assert coordinator.pending.get_stats()["total"] == 0
        assert ("alice", "PersonalSources") not in backend.zones


class TestNavigationState:
    """Tests for last viewed recipe and app location."""

    @pytest.mark.asyncio
    async def test_last_viewed_recipe(self, make_coordinator):
        coordinator = await started(make_coordinator())
        source, _, recipe = await seed(coordinator)
        coordinator.remember_recipe(recipe)

        restarted = await started(make_coordinator())

        assert await restarted.last_viewed_recipe() == recipe

    @pytest.mark.asyncio
    async def test_location(self, make_coordinator):
        coordinator = await started(make_coordinator())
        location = AppLocation(LocationKind.ALL_RECIPES, source_id=CompositeID("a", "b", "c"))

        coordinator.save_location(location)

        assert coordinator.last_location() == location

    @pytest.mark.asyncio
    async def test_status(self, make_coordinator):
        coordinator = await started(make_coordinator())
        await seed(coordinator)

        status = coordinator.status()

        assert status["current_user"] == "alice"
        assert status["current_source"] == "Family"
        assert status["sources"] == 1
        assert status["pending"]["total"] == 0
