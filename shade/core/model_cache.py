"""Model metadata cache.

Caches each provider's live model list with a time-based staleness policy.

- A provider never refreshed is always stale.
- ``refresh`` performs the live listing through a freshly built adapter and
  replaces the entry; ``fetched_at`` never moves backwards, even if the clock
  does.
- A failed refresh keeps the previous entry and re-raises, so the caller can
  tell "refresh failed" apart from "no models available".
- ``get`` returns the cached list, falling back to the registry's declared
  models when nothing has been fetched yet.

Refreshes of the same provider are serialised; different providers refresh
concurrently. The cache shares no lock with session persistence.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from shade.config.schema import ProviderConfig
from shade.core.errors import MissingApiKey, ShadeError, UnknownProvider
from shade.core.models import ModelCacheEntry, ModelInfo, utcnow
from shade.providers.factory import ProviderFactory
from shade.providers.registry import ProviderRegistry
from shade.utils.fileio import atomic_write_json, read_json
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


class ModelMetadataCache:
    """Per-provider model list cache."""

    def __init__(
        self,
        registry: ProviderRegistry,
        factory: ProviderFactory,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        ttl_overrides: dict[str, int] | None = None,
        clock: Callable[[], datetime] = utcnow,
        cache_path: Path | None = None,
    ):
        self.registry = registry
        self.factory = factory
        self.ttl_seconds = ttl_seconds
        self.ttl_overrides = dict(ttl_overrides or {})
        self.clock = clock
        self.cache_path = Path(cache_path) if cache_path else None

        self._entries: dict[str, ModelCacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    def ttl_for(self, provider_id: str) -> timedelta:
        return timedelta(seconds=self.ttl_overrides.get(provider_id, self.ttl_seconds))

    def entry(self, provider_id: str) -> ModelCacheEntry | None:
        return self._entries.get(provider_id)

    def is_stale(self, provider_id: str) -> bool:
        entry = self._entries.get(provider_id)
        if entry is None or entry.fetched_at is None:
            return True
        return self.clock() - entry.fetched_at >= self.ttl_for(provider_id)

    def get(self, provider_id: str) -> list[ModelInfo]:
        """Cached models, or the registry's declared models when never fetched."""
        entry = self._entries.get(provider_id)
        if entry is not None and entry.fetched_at is not None:
            return list(entry.models)
        return self.registry.models_for(provider_id)

    async def refresh(
        self,
        provider_id: str,
        credential: str | None = None,
        config: ProviderConfig | None = None,
    ) -> list[ModelInfo]:
        """Fetch the live model list and replace the cache entry.

        Raises:
            UnknownProvider: The provider is not registered
            MissingApiKey: The provider needs a key and none was given
            ProviderError: The listing call failed; the previous entry is kept
        """
        descriptor = self.registry.get(provider_id)
        if descriptor is None:
            raise UnknownProvider(provider_id)
        provider_id = descriptor.id

        credential = credential if credential is not None else (config.api_key if config else "")
        if descriptor.requires_api_key and not credential:
            raise MissingApiKey(provider_id)

        async with self._lock_for(provider_id):
            provider = self.factory.create(provider_id, credential, config)
            try:
                models = await provider.list_models()
            except ShadeError as e:
                logger.warning(f"Model refresh for {provider_id} failed, keeping cached list: {e}")
                raise

            previous = self._entries.get(provider_id)
            now = self.clock()
            if previous is not None and previous.fetched_at is not None:
                now = max(previous.fetched_at, now)

            self._entries[provider_id] = ModelCacheEntry(
                provider_id=provider_id, models=list(models), fetched_at=now
            )
            logger.info(f"Cached {len(models)} models for {provider_id}")

        if self.cache_path is not None:
            await self.save()
        return list(models)

    async def refresh_if_stale(
        self,
        provider_id: str,
        credential: str | None = None,
        config: ProviderConfig | None = None,
    ) -> list[ModelInfo]:
        if self.is_stale(provider_id):
            return await self.refresh(provider_id, credential, config)
        return self.get(provider_id)

    # -- persistence ------------------------------------------------------

    async def save(self):
        if self.cache_path is None:
            return
        payload = {pid: entry.to_dict() for pid, entry in self._entries.items()}
        try:
            await asyncio.to_thread(atomic_write_json, self.cache_path, payload)
        except OSError as e:
            logger.warning(f"Could not persist model cache: {e}")

    async def load(self):
        """Restore entries written by ``save``. Unreadable files are ignored."""
        if self.cache_path is None or not self.cache_path.exists():
            return
        try:
            data = await asyncio.to_thread(read_json, self.cache_path)
            entries = {pid: ModelCacheEntry.from_dict(raw) for pid, raw in data.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable model cache {self.cache_path}: {e}")
            return

        for pid, entry in entries.items():
            # Entries refreshed in this process are newer than anything on disk
            self._entries.setdefault(pid, entry)
        logger.debug(f"Loaded model cache for {len(entries)} providers")
