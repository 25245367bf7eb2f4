"""On-disk snapshots and image blobs.

Snapshots are JSON arrays keyed by entity type and the owning source id,
optionally narrowed to one category:

    {entity_type}_{source token}[_{category token}].json

The source list itself is stored as sources.json. Image blobs live under
Images/{recipe token}.asset. Every write replaces its file atomically and
writes to the same key are serialized.
"""

import asyncio
import dataclasses
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable

from ..catalog.ids import CompositeID
from ..catalog.models import ENTITY_TYPES, Recipe

logger = logging.getLogger(__name__)

RECIPE_COUNTS = "recipeCounts"


class LocalCache:
    """File-backed cache of entity snapshots and recipe images."""

    def __init__(self, cache_dir: str | Path):
        """Initialize the cache.

        Args:
            cache_dir: Directory for snapshot files. Created on first write.
        """
        self.cache_dir = Path(cache_dir).expanduser()
        self.images_dir = self.cache_dir / "Images"
        self._locks: dict[str, asyncio.Lock] = {}

    # Paths

    def snapshot_path(
        self,
        entity_type: str,
        owner: CompositeID | None,
        category: CompositeID | None = None,
    ) -> Path:
        """File for one snapshot. owner is None only for the source list."""
        name = entity_type
        if owner is not None:
            name += f"_{owner.token()}"
        if category is not None:
            name += f"_{category.token()}"
        return self.cache_dir / f"{name}.json"

    def blob_path(self, record_id: CompositeID) -> Path:
        """Canonical blob location for a recipe."""
        return self.images_dir / f"{record_id.token()}.asset"

    # Low-level helpers

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _run(self, func: Callable, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read_json(path: Path) -> Any:
        """Load a JSON file, returning None when absent or corrupt."""
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache file {path.name}: {e}")
            return None

    async def _write_json(self, path: Path, payload: Any) -> None:
        data = json.dumps(payload, indent=2).encode("utf-8")
        async with self._lock_for(str(path)):
            await self._run(self._atomic_write, path, data)

    # Snapshots

    async def write_snapshot(
        self,
        entity_type: str,
        owner: CompositeID | None,
        records: list[Any],
        category: CompositeID | None = None,
    ) -> None:
        """Replace a snapshot with the given records.

        Args:
            entity_type: One of "sources", "categories", "recipes", "tags".
            owner: Id of the owning source (None for the source list).
            records: Entities to store.
            category: Optional category id narrowing a recipes snapshot.
        """
        path = self.snapshot_path(entity_type, owner, category)
        await self._write_json(path, [r.to_cache_dict() for r in records])
        logger.debug(f"Cached {len(records)} {entity_type} to {path.name}")

    async def read_snapshot(
        self,
        entity_type: str,
        owner: CompositeID | None,
        category: CompositeID | None = None,
    ) -> list[Any] | None:
        """Read a snapshot.

        A missing category-scoped recipes snapshot is derived from the
        source's global recipes snapshot. Recipes have their
        cached_image_path repaired on the way out.

        Returns:
            Decoded entities, or None if nothing usable is cached.
        """
        return await self._run(self._read_snapshot_sync, entity_type, owner, category)

    def _decode(self, entity_type: str, entries: Any) -> list[Any] | None:
        if not isinstance(entries, list):
            return None
        model = ENTITY_TYPES[entity_type]
        try:
            return [model.from_cache_dict(e) for e in entries]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed {entity_type} snapshot: {e}")
            return None

    def _read_snapshot_sync(
        self,
        entity_type: str,
        owner: CompositeID | None,
        category: CompositeID | None,
    ) -> list[Any] | None:
        records = self._decode(
            entity_type, self._read_json(self.snapshot_path(entity_type, owner, category))
        )

        if records is None and category is not None:
            everything = self._decode(
                entity_type, self._read_json(self.snapshot_path(entity_type, owner))
            )
            if everything is not None:
                records = [r for r in everything if r.category_id == category]

        if records is not None and entity_type == "recipes":
            records = [self._heal_image_path(r) for r in records]
        return records

    def _heal_image_path(self, recipe: Recipe) -> Recipe:
        if recipe.cached_image_path and Path(recipe.cached_image_path).exists():
            return recipe
        canonical = self.blob_path(recipe.id)
        path = str(canonical) if canonical.exists() else None
        if path != recipe.cached_image_path:
            logger.debug(f"Repaired image path of recipe {recipe.id.name}: {path}")
            recipe = dataclasses.replace(recipe, cached_image_path=path)
        return recipe

    async def with_cached_image(self, recipe: Recipe) -> Recipe:
        """Return the recipe with cached_image_path pointing at a real file."""
        return await self._run(self._heal_image_path, recipe)

    # Recipe counts

    async def write_counts(self, owner: CompositeID, counts: dict[CompositeID, int]) -> None:
        entries = [{**cid.to_dict(), "count": n} for cid, n in counts.items()]
        await self._write_json(self.snapshot_path(RECIPE_COUNTS, owner), entries)

    async def read_counts(self, owner: CompositeID) -> dict[CompositeID, int]:
        entries = await self._run(self._read_json, self.snapshot_path(RECIPE_COUNTS, owner))
        if not isinstance(entries, list):
            return {}
        try:
            return {CompositeID.from_dict(e): int(e["count"]) for e in entries}
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed recipe counts: {e}")
            return {}

    # Blobs

    async def write_blob(self, record_id: CompositeID, data: bytes) -> Path:
        """Store image bytes for a recipe and return the blob path."""
        path = self.blob_path(record_id)
        async with self._lock_for(str(path)):
            await self._run(self._atomic_write, path, data)
        logger.debug(f"Cached image for {record_id.name} ({len(data)} bytes)")
        return path

    async def read_blob_path(self, record_id: CompositeID) -> Path | None:
        path = self.blob_path(record_id)
        exists = await self._run(path.exists)
        return path if exists else None

    async def remove_blob(self, record_id: CompositeID) -> None:
        path = self.blob_path(record_id)
        async with self._lock_for(str(path)):
            await self._run(lambda: path.unlink(missing_ok=True))

    # Bulk removal

    async def remove_source(self, source_id: CompositeID) -> int:
        """Delete every snapshot belonging to one source, and its recipe images.

        Returns:
            Number of files removed.
        """

        def remove() -> int:
            removed = self._remove_recipe_files(source_id)
            for path in self._owned_snapshots(source_id):
                path.unlink(missing_ok=True)
                removed += 1
            return removed

        removed = await self._run(remove)
        logger.info(f"Removed {removed} cached files for source {source_id.name}")
        return removed

    async def remove_recipes(self, owner: CompositeID) -> int:
        """Delete a source's recipe snapshots and the images they reference.

        Returns:
            Number of files removed.
        """
        removed = await self._run(self._remove_recipe_files, owner)
        logger.debug(f"Purged {removed} cached recipe files for {owner.name}")
        return removed

    def _owned_snapshots(
        self, owner: CompositeID, entity_type: str | None = None
    ) -> list[Path]:
        if not self.cache_dir.exists():
            return []
        token = owner.token()
        paths = []
        for path in self.cache_dir.glob("*.json"):
            kind, _, rest = path.stem.partition("_")
            if entity_type is not None and kind != entity_type:
                continue
            if rest == token or rest.startswith(f"{token}_"):
                paths.append(path)
        return paths

    def _remove_recipe_files(self, owner: CompositeID) -> int:
        # Blobs are keyed by recipe id, so only the snapshots know which are ours
        snapshots = self._owned_snapshots(owner, "recipes")
        removed = 0
        for path in snapshots:
            for recipe in self._decode("recipes", self._read_json(path)) or []:
                blob = self.blob_path(recipe.id)
                if blob.exists():
                    blob.unlink(missing_ok=True)
                    removed += 1
        for path in snapshots:
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    async def clear(self) -> None:
        """Delete every snapshot and blob."""

        def wipe() -> None:
            if self.cache_dir.exists():
                shutil.rmtree(self.cache_dir)

        await self._run(wipe)
        self._locks.clear()
        logger.info(f"Cleared cache directory {self.cache_dir}")
