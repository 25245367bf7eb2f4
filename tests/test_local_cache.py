"""Tests for the on-disk snapshot and blob cache."""

from datetime import datetime

import pytest

from recipesync.cache import LocalCache
from recipesync.catalog import CURRENT_USER, Category, CompositeID, Recipe, Source


def cid(name: str, owner: str = CURRENT_USER) -> CompositeID:
    return CompositeID(owner, "PersonalSources", name)


SOURCE_A = cid("SOURCE-A")
SOURCE_B = cid("SOURCE-B")
BREAKFAST = cid("CAT-BREAKFAST")
DINNER = cid("CAT-DINNER")


def recipe(name: str, category: CompositeID, **kwargs) -> Recipe:
    return Recipe(
        id=cid(f"R-{name}"),
        source_id=SOURCE_A,
        category_id=category,
        name=name,
        last_modified=datetime(2024, 3, 1),
        **kwargs,
    )


@pytest.fixture
def cache(tmp_path):
    return LocalCache(tmp_path / "cache")


class TestSnapshotPaths:
    """Tests for snapshot and blob file naming."""

    def test_source_list_path(self, cache):
        assert cache.snapshot_path("sources", None).name == "sources.json"

    def test_scoped_paths(self, cache):
        path = cache.snapshot_path("recipes", SOURCE_A, BREAKFAST)

        assert path.name == f"recipes_{SOURCE_A.token()}_{BREAKFAST.token()}.json"
        assert cache.snapshot_path("tags", SOURCE_A).name == f"tags_{SOURCE_A.token()}.json"

    def test_blob_path(self, cache):
        path = cache.blob_path(cid("R-1"))

        assert path.parent.name == "Images"
        assert path.name == f"{cid('R-1').token()}.asset"


class TestSnapshots:
    """Tests for reading and writing snapshots."""

    @pytest.mark.asyncio
    async def test_write_and_read(self, cache):
        categories = [
            Category(BREAKFAST, SOURCE_A, "Breakfast", "sun", datetime(2024, 1, 1)),
            Category(DINNER, SOURCE_A, "Dinner", "moon", datetime(2024, 1, 2)),
        ]

        await cache.write_snapshot("categories", SOURCE_A, categories)

        assert await cache.read_snapshot("categories", SOURCE_A) == categories
        assert await cache.read_snapshot("categories", SOURCE_B) is None

    @pytest.mark.asyncio
    async def test_source_list(self, cache):
        sources = [Source(SOURCE_A, "Mine", True, "alice", datetime(2024, 1, 1))]

        await cache.write_snapshot("sources", None, sources)

        assert await cache.read_snapshot("sources", None) == sources

    @pytest.mark.asyncio
    async def test_empty_snapshot_is_not_missing(self, cache):
        await cache.write_snapshot("tags", SOURCE_A, [])

        assert await cache.read_snapshot("tags", SOURCE_A) == []

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_missing(self, cache):
        path = cache.snapshot_path("categories", SOURCE_A)
        path.parent.mkdir(parents=True)
        path.write_text("[{broken")

        assert await cache.read_snapshot("categories", SOURCE_A) is None

    @pytest.mark.asyncio
    async def test_malformed_entries_read_as_missing(self, cache):
        path = cache.snapshot_path("categories", SOURCE_A)
        path.parent.mkdir(parents=True)
        path.write_text('[{"recordName": "x"}]')

        assert await cache.read_snapshot("categories", SOURCE_A) is None

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, cache):
        await cache.write_snapshot("recipes", SOURCE_A, [recipe("Soup", DINNER)])
        await cache.write_snapshot("recipes", SOURCE_A, [recipe("Stew", DINNER)])

        leftovers = [p for p in cache.cache_dir.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []
        assert [r.name for r in await cache.read_snapshot("recipes", SOURCE_A)] == ["Stew"]

    @pytest.mark.asyncio
    async def test_category_falls_back_to_global_snapshot(self, cache):
        """A missing per-category snapshot is derived from the global one."""
        await cache.write_snapshot(
            "recipes",
            SOURCE_A,
            [recipe("Eggs", BREAKFAST), recipe("Soup", DINNER), recipe("Toast", BREAKFAST)],
        )

        breakfast = await cache.read_snapshot("recipes", SOURCE_A, BREAKFAST)

        assert [r.name for r in breakfast] == ["Eggs", "Toast"]

    @pytest.mark.asyncio
    async def test_category_snapshot_wins_over_global(self, cache):
        await cache.write_snapshot("recipes", SOURCE_A, [recipe("Eggs", BREAKFAST)])
        await cache.write_snapshot("recipes", SOURCE_A, [], BREAKFAST)

        assert await cache.read_snapshot("recipes", SOURCE_A, BREAKFAST) == []


class TestImageHealing:
    """Tests for cached_image_path repair."""

    @pytest.mark.asyncio
    async def test_stale_path_is_repaired_to_blob(self, cache):
        stored = recipe("Soup", DINNER, cached_image_path="/gone/old-location.asset")
        blob = await cache.write_blob(stored.id, b"image-bytes")
        await cache.write_snapshot("recipes", SOURCE_A, [stored])

        [loaded] = await cache.read_snapshot("recipes", SOURCE_A)

        assert loaded.cached_image_path == str(blob)
        assert blob.read_bytes() == b"image-bytes"

    @pytest.mark.asyncio
    async def test_stale_path_without_blob_is_cleared(self, cache):
        stored = recipe("Soup", DINNER, cached_image_path="/gone/old-location.asset")
        await cache.write_snapshot("recipes", SOURCE_A, [stored])

        [loaded] = await cache.read_snapshot("recipes", SOURCE_A)

        assert loaded.cached_image_path is None

    @pytest.mark.asyncio
    async def test_missing_path_picks_up_blob(self, cache):
        stored = recipe("Soup", DINNER)
        blob = await cache.write_blob(stored.id, b"x")

        healed = await cache.with_cached_image(stored)

        assert healed.cached_image_path == str(blob)

    @pytest.mark.asyncio
    async def test_remove_blob(self, cache):
        record_id = cid("R-1")
        await cache.write_blob(record_id, b"x")

        await cache.remove_blob(record_id)
        await cache.remove_blob(record_id)

        assert await cache.read_blob_path(record_id) is None


class TestCountsAndRemoval:
    """Tests for recipe counts, per-source removal and clearing."""

    @pytest.mark.asyncio
    async def test_counts(self, cache):
        await cache.write_counts(SOURCE_A, {BREAKFAST: 2, DINNER: 0})

        assert await cache.read_counts(SOURCE_A) == {BREAKFAST: 2, DINNER: 0}
        assert await cache.read_counts(SOURCE_B) == {}

    @pytest.mark.asyncio
    async def test_remove_source_only_touches_that_source(self, cache):
        await cache.write_snapshot("sources", None, [])
        await cache.write_snapshot("categories", SOURCE_A, [])
        await cache.write_snapshot("recipes", SOURCE_A, [], BREAKFAST)
        await cache.write_counts(SOURCE_A, {BREAKFAST: 1})
        await cache.write_snapshot("categories", SOURCE_B, [])

        removed = await cache.remove_source(SOURCE_A)

        assert removed == 3
        assert await cache.read_snapshot("categories", SOURCE_A) is None
        assert await cache.read_snapshot("categories", SOURCE_B) == []
        assert await cache.read_snapshot("sources", None) == []

    @pytest.mark.asyncio
    async def test_remove_source_deletes_its_recipe_images(self, cache):
        pancakes = recipe("Pancakes", BREAKFAST)
        waffles = recipe("Waffles", DINNER)
        await cache.write_snapshot("recipes", SOURCE_A, [pancakes])
        await cache.write_snapshot("recipes", SOURCE_A, [pancakes], BREAKFAST)
        await cache.write_blob(pancakes.id, b"pancakes")
        await cache.write_snapshot("recipes", SOURCE_B, [waffles])
        await cache.write_blob(waffles.id, b"waffles")

        removed = await cache.remove_source(SOURCE_A)

        assert removed == 3
        assert await cache.read_blob_path(pancakes.id) is None
        assert await cache.read_blob_path(waffles.id) is not None
        assert [r.name for r in await cache.read_snapshot("recipes", SOURCE_B)] == ["Waffles"]

    @pytest.mark.asyncio
    async def test_remove_recipes_keeps_other_snapshots(self, cache):
        pancakes = recipe("Pancakes", BREAKFAST)
        await cache.write_snapshot("categories", SOURCE_A, [])
        await cache.write_counts(SOURCE_A, {BREAKFAST: 1})
        await cache.write_snapshot("recipes", SOURCE_A, [pancakes])
        await cache.write_blob(pancakes.id, b"img")

        assert await cache.remove_recipes(SOURCE_A) == 2
        assert await cache.read_snapshot("recipes", SOURCE_A) is None
        assert await cache.read_blob_path(pancakes.id) is None
        assert await cache.read_snapshot("categories", SOURCE_A) == []
        assert await cache.read_counts(SOURCE_A) == {BREAKFAST: 1}

    @pytest.mark.asyncio
    async def test_remove_source_on_empty_cache(self, cache):
        assert await cache.remove_source(SOURCE_A) == 0

    @pytest.mark.asyncio
    async def test_clear(self, cache):
        await cache.write_snapshot("categories", SOURCE_A, [])
        await cache.write_blob(cid("R-1"), b"x")

        await cache.clear()

        assert not cache.cache_dir.exists()
        assert await cache.read_snapshot("categories", SOURCE_A) is None
