"""Persistent log of local mutations awaiting remote confirmation.

Every optimistic write is appended here before the remote call. Entries
leave the pending state only when the remote store confirms them or fails
them permanently, so a crash or outage never loses an edit.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..catalog.ids import CompositeID
from ..catalog.records import RemoteRecord, Scope

logger = logging.getLogger(__name__)

PENDING_SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_ops (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    operation TEXT NOT NULL,
    scope TEXT NOT NULL,
    record_id TEXT NOT NULL,
    source_token TEXT NOT NULL,
    payload TEXT,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_ops(status, seq);
CREATE INDEX IF NOT EXISTS idx_pending_source ON pending_ops(source_token);
"""


class OperationStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class OperationKind(Enum):
    SAVE = "save"
    DELETE = "delete"


@dataclass
class PendingOperation:
    """A single logged mutation."""

    id: str
    seq: int
    operation: OperationKind
    scope: Scope
    record_id: CompositeID
    source_token: str
    record: RemoteRecord | None
    status: OperationStatus
    attempts: int
    error: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PendingOperation":
        payload = json.loads(row["payload"]) if row["payload"] else None
        return cls(
            id=row["id"],
            seq=row["seq"],
            operation=OperationKind(row["operation"]),
            scope=Scope(row["scope"]),
            record_id=CompositeID.from_dict(json.loads(row["record_id"])),
            source_token=row["source_token"],
            record=RemoteRecord.from_dict(payload) if payload else None,
            status=OperationStatus(row["status"]),
            attempts=row["attempts"],
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class PendingOperationLog:
    """SQLite-backed queue of mutations, replayed in insertion order."""

    def __init__(self, db_path: str | Path):
        """Initialize the log.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._seq = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(PENDING_SCHEMA)
        self._conn.commit()

        row = self._conn.execute("SELECT MAX(seq) FROM pending_ops").fetchone()
        if row[0] is not None:
            self._seq = row[0]

        logger.info(f"PendingOperationLog connected to {self.db_path}, seq={self._seq}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def append(
        self,
        operation: OperationKind,
        scope: Scope,
        record_id: CompositeID,
        source_id: CompositeID,
        record: RemoteRecord | None = None,
    ) -> PendingOperation:
        """Log a mutation before it is sent.

        Args:
            operation: SAVE or DELETE.
            scope: Partition the mutation targets.
            record_id: Id of the affected record.
            source_id: Source the record belongs to.
            record: Full record for saves.

        Returns:
            The logged PendingOperation.
        """
        conn = self._ensure_connected()
        self._seq += 1
        now = datetime.now()

        op = PendingOperation(
            id=str(uuid.uuid4()),
            seq=self._seq,
            operation=operation,
            scope=scope,
            record_id=record_id,
            source_token=source_id.token(),
            record=record,
            status=OperationStatus.PENDING,
            attempts=0,
            error=None,
            created_at=now,
        )

        conn.execute(
            """
            INSERT INTO pending_ops (
                id, seq, operation, scope, record_id, source_token, payload,
                status, attempts, error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, ?)
            """,
            (
                op.id,
                op.seq,
                operation.value,
                scope.value,
                json.dumps(record_id.to_dict()),
                op.source_token,
                json.dumps(record.to_dict()) if record else None,
                OperationStatus.PENDING.value,
                now.isoformat(),
                now.isoformat(),
            ),
        )
        conn.commit()

        logger.debug(f"Logged {operation.value} of {record_id} as {op.id}")
        return op

    def get(self, op_id: str) -> PendingOperation | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM pending_ops WHERE id = ?", (op_id,)).fetchone()
        return PendingOperation.from_row(row) if row else None

    def get_pending(self, limit: int = 1000) -> list[PendingOperation]:
        """Get operations still awaiting the remote store, oldest first."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT * FROM pending_ops
            WHERE status = ?
            ORDER BY seq ASC
            LIMIT ?
            """,
            (OperationStatus.PENDING.value, limit),
        )
        return [PendingOperation.from_row(row) for row in cursor]

    def _set_status(
        self, op_id: str, status: OperationStatus, error: str | None = None
    ) -> bool:
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE pending_ops
            SET status = ?, error = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                error,
                datetime.now().isoformat(),
                op_id,
                OperationStatus.PENDING.value,
            ),
        )
        conn.commit()
        return cursor.rowcount > 0

    def mark_confirmed(self, op_id: str) -> bool:
        return self._set_status(op_id, OperationStatus.CONFIRMED)

    def mark_failed(self, op_id: str, error: str) -> bool:
        return self._set_status(op_id, OperationStatus.FAILED, error)

    def record_attempt(self, op_id: str, error: str | None = None) -> None:
        """Count a delivery attempt that left the operation pending."""
        conn = self._ensure_connected()
        conn.execute(
            """
            UPDATE pending_ops
            SET attempts = attempts + 1, error = ?, updated_at = ?
            WHERE id = ?
            """,
            (error, datetime.now().isoformat(), op_id),
        )
        conn.commit()

    def discard_source(self, source_id: CompositeID) -> int:
        """Drop pending operations for a source that no longer exists locally."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "DELETE FROM pending_ops WHERE source_token = ? AND status = ?",
            (source_id.token(), OperationStatus.PENDING.value),
        )
        conn.commit()
        if cursor.rowcount:
            logger.info(f"Discarded {cursor.rowcount} pending operations for {source_id}")
        return cursor.rowcount

    def prune(self) -> int:
        """Delete confirmed operations."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "DELETE FROM pending_ops WHERE status = ?", (OperationStatus.CONFIRMED.value,)
        )
        conn.commit()
        return cursor.rowcount

    def clear(self) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM pending_ops")
        conn.commit()

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics.

        Returns:
            Dictionary with counts per status.
        """
        conn = self._ensure_connected()
        stats: dict[str, Any] = {status.value: 0 for status in OperationStatus}
        cursor = conn.execute("SELECT status, COUNT(*) FROM pending_ops GROUP BY status")
        for row in cursor:
            stats[row[0]] = row[1]
        stats["total"] = sum(stats[s.value] for s in OperationStatus)
        return stats
