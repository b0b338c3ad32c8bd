"""Pool reconciliation — decide whether a pool is due, resolve its target, and run the upgrade policy."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from pool_upgrade_controller.clients.k8s_nodes import K8sNodeClient
from pool_upgrade_controller.clients.k8s_pools import K8sPoolStore
from pool_upgrade_controller.clients.node_agent import NodeAgentClient
from pool_upgrade_controller.config import TimingConfig, get_timings
from pool_upgrade_controller.errors import PoolNotFoundError, UpgradeRunError, VersionResolutionError
from pool_upgrade_controller.models import Pool, PoolStatus
from pool_upgrade_controller.upgrader.orchestrator import NodeUpgrader
from pool_upgrade_controller.upgrader.policy import build_policy
from pool_upgrade_controller.versions.resolver import ResolverManager

log = structlog.get_logger()


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one pass. ``requeue_after`` is None when the pool should not be requeued."""

    requeue_after: float | None = None


class PoolReconciler:
    """Runs one reconciliation pass for a named pool.

    Passes for the same pool must not overlap; the caller serializes them.
    """

    def __init__(
        self,
        pools: K8sPoolStore,
        nodes: K8sNodeClient,
        agent: NodeAgentClient,
        resolvers: ResolverManager,
        timings: TimingConfig | None = None,
    ) -> None:
        self._pools = pools
        self._nodes = nodes
        self._agent = agent
        self._resolvers = resolvers
        self._timings = timings or get_timings()

    async def reconcile(self, name: str) -> ReconcileResult:
        try:
            pool = await self._pools.get(name)
        except PoolNotFoundError:
            log.info("pool_not_found", pool=name)
            return ReconcileResult()

        if pool.status.paused:
            log.info("pool_paused", pool=name)
            return ReconcileResult()

        interval = pool.spec.check_interval
        now = datetime.now(UTC)
        # A scheduled run waits, unless checkInterval shrank below the remaining time.
        if pool.status.next_run is not None:
            remaining = (pool.status.next_run - now).total_seconds()
            if remaining > interval:
                next_run = now + timedelta(seconds=interval)
                log.info("rescheduling_next_run", pool=name, check_interval=interval, next_run=next_run.isoformat())
                await self._pools.mutate_status(name, _set_next_run(next_run))
                return ReconcileResult(requeue_after=interval)
            if remaining > 0:
                log.info("next_run_in_future", pool=name, remaining=round(remaining, 1))
                return ReconcileResult(requeue_after=remaining)

        try:
            version = await self._target_version(pool)
        except VersionResolutionError as exc:
            # Not an upgrade failure: the failure policy does not apply.
            log.error("version_resolution_failed", pool=name, channel=pool.spec.channel, error=str(exc))
            return await self._finish(pool, failed=False)

        nodes = await self._nodes.list_pool_nodes(pool.name)

        def record(status: PoolStatus) -> None:
            status.version = version
            status.size = len(nodes)

        updated = await self._pools.mutate_status(name, record)
        if updated is None:
            return ReconcileResult()

        upgrader = NodeUpgrader(pool.name, pool.spec.repository, self._agent, self._nodes, self._pools, self._timings)
        policy = build_policy(upgrader, pool.spec.concurrency)

        # Nodes interrupted by a previous pass finish before anything new starts.
        resumed = [n for n in nodes if n.name in updated.status.in_progress]
        if resumed:
            log.info("pool_has_upgrades_in_progress", pool=name, count=len(resumed), channel=pool.spec.channel)
            try:
                await policy.run(resumed, version, updated.status.in_progress)
            except UpgradeRunError as exc:
                log.error("resumed_upgrade_failed", pool=name, failed=sorted(exc.failures), error=str(exc))

        # Resumption rewrites in-progress; the full run must see the fresh record.
        try:
            current = await self._pools.get(name)
        except PoolNotFoundError:
            log.info("pool_not_found", pool=name)
            return ReconcileResult()

        try:
            await policy.run(nodes, version, current.status.in_progress)
        except UpgradeRunError as exc:
            log.error("upgrade_run_failed", pool=name, failed=sorted(exc.failures), error=str(exc))
            return await self._finish(pool, failed=True)

        log.info("upgrade_run_succeeded", pool=name, version=version, size=len(nodes))
        return await self._finish(pool, failed=False)

    async def _target_version(self, pool: Pool) -> str:
        if pool.spec.version:
            return pool.spec.version

        resolver = self._resolvers.resolver_for(pool.spec.registry, pool.spec.repository)
        if not await resolver.wait_for_cache_sync():
            msg = "timed out waiting for the version cache to sync"
            raise VersionResolutionError(msg)

        version = resolver.cache.get(pool.spec.channel)
        if version is None:
            msg = f"no version found for {pool.spec.channel!r} channel"
            raise VersionResolutionError(msg)

        log.info("obtained_pool_version", pool=pool.name, channel=pool.spec.channel, version=version)
        return version

    async def _finish(self, pool: Pool, *, failed: bool) -> ReconcileResult:
        """Apply the failure policy and record when the pool should next run."""
        if failed and pool.spec.failure_policy == "Pause":

            def pause(status: PoolStatus) -> None:
                status.next_run = None
                status.paused = True

            await self._pools.mutate_status(pool.name, pause)
            log.info("pausing_upgrades", pool=pool.name)
            return ReconcileResult()

        interval = pool.spec.check_interval
        next_run = datetime.now(UTC) + timedelta(seconds=interval)
        await self._pools.mutate_status(pool.name, _set_next_run(next_run))
        log.info("requeuing_upgrade", pool=pool.name, next_run=next_run.isoformat())
        return ReconcileResult(requeue_after=interval)


def _set_next_run(when: datetime) -> Callable[[PoolStatus], None]:
    def mutate(status: PoolStatus) -> None:
        status.next_run = when

    return mutate
