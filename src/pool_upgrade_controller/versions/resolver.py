"""Background version resolver — polls a registry and keeps the channel cache current."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import httpx
import structlog

from pool_upgrade_controller.clients.registry import RegistryClient
from pool_upgrade_controller.config import TimingConfig, get_timings
from pool_upgrade_controller.errors import ConfigurationError, InvalidChannelError, RegistryError
from pool_upgrade_controller.versions.cache import VersionCache
from pool_upgrade_controller.versions.filter import resolve_channel

log = structlog.get_logger()


class VersionResolver:
    """Owns a VersionCache and refreshes it from one registry repository.

    ``run`` is a daemon loop for the lifetime of the controller. Consumers call
    ``wait_for_cache_sync`` before trusting anything they read from ``cache``.
    """

    def __init__(self, cache: VersionCache | None = None, timings: TimingConfig | None = None) -> None:
        self.cache = cache if cache is not None else VersionCache()
        self._timings = timings or get_timings()
        self._synced = asyncio.Event()

    @property
    def synced(self) -> bool:
        """Whether at least one full resolution pass has completed."""
        return self._synced.is_set()

    async def _discover(self, channel: str, tags: list[str], registry: RegistryClient, repository: str) -> None:
        try:
            found = await resolve_channel(channel, tags, registry, repository)
        except InvalidChannelError as exc:
            log.error("invalid_channel", channel=channel, error=str(exc))
            return

        # Never replace a known version with nothing.
        if not found:
            return

        previous = self.cache.get(channel)
        if previous == found:
            return

        self.cache.set(channel, found)
        log.info("channel_version_updated", channel=channel, version=found, previous=previous)

    async def resolve_once(self, registry: RegistryClient, repository: str, channels: Sequence[str]) -> None:
        """List tags once, resolve every channel concurrently, then mark the cache synced.

        Raises:
            httpx.HTTPError: If the tag listing cannot reach the registry.
            RegistryError: If the registry rejects the tag listing.
        """
        tags = await registry.list_tags(repository)

        # One channel failing must not keep the others from updating.
        results = await asyncio.gather(
            *(self._discover(channel, tags, registry, repository) for channel in channels),
            return_exceptions=True,
        )
        for channel, result in zip(channels, results, strict=True):
            if isinstance(result, Exception):
                log.error("channel_resolution_failed", channel=channel, repository=repository, error=str(result))

        # Set only after a successful listing; a failed listing leaves waiters blocked.
        self._synced.set()

    async def run(self, registry: RegistryClient, repository: str, channels: Sequence[str]) -> None:
        """Resolve every channel, sleep, repeat. Registry failures never end the loop.

        Raises:
            ConfigurationError: If ``repository`` is empty.
        """
        if not repository:
            msg = "A repository is required to resolve versions."
            raise ConfigurationError(msg)

        log.info("version_resolver_started", repository=repository, channels=list(channels))
        while True:
            try:
                await self.resolve_once(registry, repository, channels)
            except (httpx.HTTPError, RegistryError) as exc:
                log.warning("tag_listing_failed", repository=repository, error=str(exc))
                delay = self._timings.resolver_retry_interval
            else:
                delay = self._timings.resolver_interval
            await asyncio.sleep(delay)

    async def wait_for_cache_sync(self, timeout: float | None = None) -> bool:
        """Block until the first resolution pass completes. Returns False on timeout."""
        if timeout is None:
            timeout = self._timings.cache_sync_timeout
        try:
            await asyncio.wait_for(self._synced.wait(), timeout)
        except TimeoutError:
            return False
        return True


class ResolverManager:
    """Runs one background VersionResolver per distinct (registry, repository).

    Resolvers start lazily the first time a pool asks for them. Must be used from
    inside a running event loop.
    """

    def __init__(
        self,
        registry_factory: Callable[[str], RegistryClient],
        channels: Sequence[str],
        timings: TimingConfig | None = None,
    ) -> None:
        self._registry_factory = registry_factory
        self._channels = tuple(channels)
        self._timings = timings or get_timings()
        self._resolvers: dict[tuple[str, str], VersionResolver] = {}
        self._registries: dict[tuple[str, str], RegistryClient] = {}
        self._tasks: dict[tuple[str, str], asyncio.Task[None]] = {}

    def resolver_for(self, registry_url: str, repository: str) -> VersionResolver:
        """Return the resolver for this source, starting its background loop on first use."""
        key = (registry_url, repository)
        resolver = self._resolvers.get(key)
        if resolver is not None:
            return resolver

        registry = self._registry_factory(registry_url)
        resolver = VersionResolver(timings=self._timings)
        task = asyncio.create_task(
            resolver.run(registry, repository, self._channels),
            name=f"version-resolver:{registry_url}/{repository}",
        )
        task.add_done_callback(lambda t: self._on_exit(key, t))

        self._resolvers[key] = resolver
        self._registries[key] = registry
        self._tasks[key] = task
        return resolver

    @staticmethod
    def _on_exit(key: tuple[str, str], task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("version_resolver_stopped", registry=key[0], repository=key[1], error=str(exc))

    async def aclose(self) -> None:
        """Stop every resolver loop and close its registry client."""
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        for registry in self._registries.values():
            await registry.aclose()
        self._tasks.clear()
        self._resolvers.clear()
        self._registries.clear()
