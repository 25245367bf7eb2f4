"""Wiring of the sync engine from a Config."""

import logging

from .cache import LocalCache, StateStore
from .config import Config
from .remote import HttpRemoteStore, MemoryRemoteStore, RemoteStore
from .sync import PendingOperationLog, ScopeResolver, ShareManager, SyncCoordinator

logger = logging.getLogger(__name__)


def build_remote(config: Config) -> RemoteStore:
    """Create the remote store selected by config.remote.backend."""
    if config.remote.backend == "memory":
        return MemoryRemoteStore(user=config.remote.user)
    return HttpRemoteStore(
        base_url=config.remote.base_url,
        api_token=config.remote.api_token,
        max_retries=config.remote.max_retries,
        timeout=config.remote.timeout,
    )


class RecipeSync:
    """One account's sync engine: stores, coordinator and share manager."""

    def __init__(self, config: Config, remote: RemoteStore | None = None):
        self.config = config
        self.remote = remote or build_remote(config)

        self.cache = LocalCache(config.cache.cache_dir)
        self.state = StateStore(config.cache.state_db_path)
        self.pending = PendingOperationLog(config.sync.pending_db_path)

        self.coordinator = SyncCoordinator(
            remote=self.remote,
            cache=self.cache,
            state=self.state,
            pending=self.pending,
            resolver=ScopeResolver(config.identity.personal_zone),
            remote_enabled=config.remote.enabled,
            rollback_on_permanent_failure=config.sync.rollback_on_permanent_failure,
        )
        self.shares = ShareManager(
            self.coordinator,
            url_retry_delay=config.sync.share_url_retry_delay_seconds,
            url_max_retries=config.sync.share_url_max_retries,
        )

    async def start(self) -> None:
        """Open local stores and bring the coordinator up."""
        self.state.connect()
        self.pending.connect()
        await self.coordinator.start()
        logger.info(
            f"recipesync started ({self.config.remote.backend} backend, "
            f"remote {'available' if self.coordinator.remote_available else 'unavailable'})"
        )

    async def stop(self) -> None:
        await self.remote.close()
        self.pending.close()
        self.state.close()
        logger.info("recipesync stopped")
