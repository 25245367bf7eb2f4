"""Local persistence: snapshot/blob cache and key-value state."""

from .local_cache import RECIPE_COUNTS, LocalCache
from .state_store import AppLocation, LocationKind, StateStore

__all__ = [
    "RECIPE_COUNTS",
    "LocalCache",
    "AppLocation",
    "LocationKind",
    "StateStore",
]
