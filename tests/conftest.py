"""Shared test fixtures, builders, and in-memory collaborators."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import pytest

from pool_upgrade_controller.config import TimingConfig
from pool_upgrade_controller.errors import PoolNotFoundError
from pool_upgrade_controller.models import NodeRef, Pool, PoolStatus, VersionInfo


def make_node(name: str = "node-1", address: str | None = "10.0.0.1") -> NodeRef:
    """Create a pool member node."""
    return NodeRef(name=name, address=address)


def make_pool_resource(
    name: str = "workers",
    namespace: str = "default",
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    resource_version: str = "1",
) -> dict[str, Any]:
    """Create a raw pool custom-object dict as returned by the API server."""
    return {
        "apiVersion": "upgrade.talos.dev/v1alpha1",
        "kind": "Pool",
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version},
        "spec": spec if spec is not None else {"channel": "stable"},
        "status": status if status is not None else {},
    }


def make_pool(name: str = "workers", spec: dict[str, Any] | None = None, status: dict[str, Any] | None = None) -> Pool:
    return Pool.from_resource(make_pool_resource(name=name, spec=spec, status=status))


def make_timings(**overrides: Any) -> TimingConfig:
    """Timing config with no real waiting, so tests never sleep."""
    values: dict[str, Any] = {
        "resolver_interval": 3600.0,
        "resolver_retry_interval": 0.0,
        "cache_sync_timeout": 0.05,
        "node_retry_timeout": 0.2,
        "node_retry_unit": 0.0,
        "node_retry_jitter": 0.0,
        "verify_timeout": 1.0,
        "verify_poll_interval": 0.0,
        "health_check_attempts": 3,
        "health_check_pause": 0.0,
        "paused_poll_interval": 0.0,
        "reconcile_retry_interval": 0.0,
        "registry_timeout": 1.0,
    }
    values.update(overrides)
    return TimingConfig(**values)


class FakeAgent:
    """In-memory node agent.

    Each node reports ``versions[name]``, or the next entry of ``script[name]`` while
    one remains. An upgrade command moves the node to the requested tag when
    ``apply_upgrades`` is set.
    """

    def __init__(
        self,
        versions: dict[str, str] | None = None,
        *,
        apply_upgrades: bool = True,
        fail_upgrade: Iterable[str] = (),
        version_failures: dict[str, int] | None = None,
        script: dict[str, list[str]] | None = None,
        log_lines: Iterable[str] = (),
        log_error: Exception | None = None,
    ) -> None:
        self.versions = dict(versions or {})
        self.apply_upgrades = apply_upgrades
        self.fail_upgrade = set(fail_upgrade)
        self.version_failures = dict(version_failures or {})
        self.script = {name: list(tags) for name, tags in (script or {}).items()}
        self.log_lines = list(log_lines)
        self.log_error = log_error
        self.version_calls: list[str] = []
        self.upgrade_calls: list[tuple[str, str]] = []
        self.on_upgrade: Callable[[NodeRef, str], None] | None = None

    async def get_version(self, node: NodeRef) -> VersionInfo:
        self.version_calls.append(node.name)
        if self.version_failures.get(node.name, 0) > 0:
            self.version_failures[node.name] -= 1
            msg = "connection refused"
            raise ConnectionError(msg)
        pending = self.script.get(node.name)
        if pending:
            self.versions[node.name] = pending.pop(0)
        return VersionInfo(tag=self.versions[node.name])

    async def upgrade(self, node: NodeRef, image: str) -> None:
        self.upgrade_calls.append((node.name, image))
        if self.on_upgrade is not None:
            self.on_upgrade(node, image)
        if node.name in self.fail_upgrade:
            msg = "upgrade rejected"
            raise RuntimeError(msg)
        if self.apply_upgrades:
            self.versions[node.name] = image.rsplit(":", 1)[1]

    async def stream_logs(self, node: NodeRef) -> AsyncIterator[str]:
        for line in self.log_lines:
            yield line
        if self.log_error is not None:
            raise self.log_error


class FakeNodeClient:
    """In-memory stand-in for K8sNodeClient."""

    def __init__(
        self,
        nodes: Iterable[NodeRef] = (),
        *,
        not_ready: Iterable[str] = (),
        fail_uncordon: bool = False,
    ) -> None:
        self.nodes = list(nodes)
        self.not_ready = set(not_ready)
        self.fail_uncordon = fail_uncordon
        self.ready_checks: list[str] = []
        self.uncordoned: list[str] = []

    async def list_pool_nodes(self, pool: str) -> list[NodeRef]:
        return list(self.nodes)

    async def node_ready(self, name: str) -> bool:
        self.ready_checks.append(name)
        return name not in self.not_ready

    async def uncordon(self, name: str) -> None:
        if self.fail_uncordon:
            msg = "patch rejected"
            raise RuntimeError(msg)
        self.uncordoned.append(name)


class FakePoolStore:
    """In-memory stand-in for K8sPoolStore holding a single pool."""

    def __init__(self, pool: Pool | None = None) -> None:
        self.pool = pool
        self.writes = 0

    async def get(self, name: str) -> Pool:
        if self.pool is None or self.pool.name != name:
            msg = f"Pool {name} not found"
            raise PoolNotFoundError(msg)
        return self.pool.model_copy(deep=True)

    async def update_status(self, pool: Pool) -> Pool:
        self.writes += 1
        self.pool = pool.model_copy(deep=True)
        return pool.model_copy(deep=True)

    async def mutate_status(self, name: str, mutate: Callable[[PoolStatus], None]) -> Pool | None:
        try:
            pool = await self.get(name)
        except PoolNotFoundError:
            return None
        mutate(pool.status)
        return await self.update_status(pool)


@pytest.fixture
def timings() -> TimingConfig:
    return make_timings()
