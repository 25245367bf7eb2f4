"""Synchronization engine: routing, error policy, pending log, coordination, sharing."""

from .coordinator import (
    ListKey,
    ListKind,
    ListState,
    MutationResult,
    MutationStatus,
    SyncCoordinator,
)
from .errors import ErrorClass, classify_error, describe_error
from .identity import ScopeResolver
from .pending_ops import OperationKind, OperationStatus, PendingOperation, PendingOperationLog
from .sharing import ShareManager, ShareOutcome, SharePolicyError, ShareResult

__all__ = [
    "ListKey",
    "ListKind",
    "ListState",
    "MutationResult",
    "MutationStatus",
    "SyncCoordinator",
    "ErrorClass",
    "classify_error",
    "describe_error",
    "ScopeResolver",
    "OperationKind",
    "OperationStatus",
    "PendingOperation",
    "PendingOperationLog",
    "ShareManager",
    "ShareOutcome",
    "SharePolicyError",
    "ShareResult",
]
