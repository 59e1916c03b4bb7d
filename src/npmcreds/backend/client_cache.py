"""Process-wide cache of the registry client built from the stored connection."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from ..common.errors import NotConfigured
from .connection import read_connection
from .registry import ClientFactory, NpmRegistryClient
from .storage import Storage

LOGGER = structlog.get_logger("npmcreds.client_cache")


class ClientCache:
    """Holds at most one live client per connection generation.

    Every connection write bumps the generation through ``invalidate`` so the
    next ``get_client`` rebuilds from the new credentials.
    """

    def __init__(self, factory: ClientFactory) -> None:
        self.factory = factory
        self._lock = asyncio.Lock()
        self._client: Optional[NpmRegistryClient] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def get_client(self, storage: Storage) -> NpmRegistryClient:
        async with self._lock:
            if self._client is not None:
                return self._client
            config = await read_connection(storage)
            if config is None:
                raise NotConfigured()
            self._client = self.factory(config)
            LOGGER.info(
                "Registry client created",
                generation=self._generation,
                uri=config.connection_uri,
                username=config.username,
            )
            return self._client

    async def invalidate(self) -> None:
        async with self._lock:
            self._client = None
            self._generation += 1
            LOGGER.debug("Registry client invalidated", generation=self._generation)
