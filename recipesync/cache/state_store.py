"""Small persisted key-value state: selection, navigation and share state."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..catalog.ids import CompositeID
from ..catalog.models import ShareState

logger = logging.getLogger(__name__)

STATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

CURRENT_USER_KEY = "current_user"
SELECTED_SOURCE_KEY = "selected_source"
LAST_VIEWED_RECIPE_KEY = "last_viewed_recipe"
APP_LOCATION_KEY = "app_location"
SHARE_STATE_PREFIX = "share_state:"


class LocationKind(Enum):
    ALL_RECIPES = "all_recipes"
    CATEGORY = "category"
    TAG = "tag"
    RECIPE = "recipe"


@dataclass(frozen=True)
class AppLocation:
    """Where the user was last, restored on next launch."""

    kind: LocationKind
    source_id: CompositeID | None = None
    category_id: CompositeID | None = None
    tag_id: CompositeID | None = None
    recipe_id: CompositeID | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        for key in ("source_id", "category_id", "tag_id", "recipe_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppLocation":
        def ref(key: str) -> CompositeID | None:
            return CompositeID.from_dict(data[key]) if data.get(key) else None

        return cls(
            kind=LocationKind(data["kind"]),
            source_id=ref("source_id"),
            category_id=ref("category_id"),
            tag_id=ref("tag_id"),
            recipe_id=ref("recipe_id"),
        )


class StateStore:
    """SQLite-backed key-value store for small persisted values."""

    def __init__(self, db_path: str | Path):
        """Initialize the state store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(STATE_SCHEMA)
        self._conn.commit()
        logger.info(f"StateStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> Any:
        """Return the stored value, or None if the key is unset or unreadable."""
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except ValueError:
            logger.warning(f"Discarding unreadable state for {key}")
            return None

    def set(self, key: str, value: Any) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                           updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), datetime.now().isoformat()),
        )
        conn.commit()

    def delete(self, key: str) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        return [row["key"] for row in cursor]

    def clear(self) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM kv")
        conn.commit()
        logger.info("Cleared persisted state")

    # Typed accessors

    def _get_id(self, key: str) -> CompositeID | None:
        data = self.get(key)
        if not data:
            return None
        try:
            return CompositeID.from_dict(data)
        except KeyError:
            return None

    def _set_id(self, key: str, value: CompositeID | None) -> None:
        if value is None:
            self.delete(key)
        else:
            self.set(key, value.to_dict())

    @property
    def current_user(self) -> str | None:
        return self.get(CURRENT_USER_KEY)

    @current_user.setter
    def current_user(self, value: str | None) -> None:
        if value is None:
            self.delete(CURRENT_USER_KEY)
        else:
            self.set(CURRENT_USER_KEY, value)

    @property
    def selected_source(self) -> CompositeID | None:
        return self._get_id(SELECTED_SOURCE_KEY)

    @selected_source.setter
    def selected_source(self, value: CompositeID | None) -> None:
        self._set_id(SELECTED_SOURCE_KEY, value)

    @property
    def last_viewed_recipe(self) -> CompositeID | None:
        return self._get_id(LAST_VIEWED_RECIPE_KEY)

    @last_viewed_recipe.setter
    def last_viewed_recipe(self, value: CompositeID | None) -> None:
        self._set_id(LAST_VIEWED_RECIPE_KEY, value)

    @property
    def app_location(self) -> AppLocation | None:
        data = self.get(APP_LOCATION_KEY)
        if not data:
            return None
        try:
            return AppLocation.from_dict(data)
        except (KeyError, ValueError):
            logger.warning("Discarding unreadable app location")
            return None

    @app_location.setter
    def app_location(self, value: AppLocation | None) -> None:
        if value is None:
            self.delete(APP_LOCATION_KEY)
        else:
            self.set(APP_LOCATION_KEY, value.to_dict())

    def get_share_state(self, source_id: CompositeID) -> ShareState:
        data = self.get(SHARE_STATE_PREFIX + source_id.token())
        if not data:
            return ShareState()
        try:
            return ShareState.from_dict(data)
        except (KeyError, ValueError):
            return ShareState()

    def set_share_state(self, source_id: CompositeID, state: ShareState) -> None:
        self.set(SHARE_STATE_PREFIX + source_id.token(), state.to_dict())

    def clear_share_state(self, source_id: CompositeID) -> None:
        self.delete(SHARE_STATE_PREFIX + source_id.token())

    def shared_source_tokens(self) -> list[str]:
        """Tokens of sources with a persisted share state."""
        return [k[len(SHARE_STATE_PREFIX):] for k in self.keys(SHARE_STATE_PREFIX)]
