"""Per-node upgrade protocol — check, upgrade, verify, wait for health, clean up."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

import structlog

from pool_upgrade_controller.clients.k8s_nodes import K8sNodeClient
from pool_upgrade_controller.clients.k8s_pools import K8sPoolStore
from pool_upgrade_controller.clients.node_agent import NodeAgentClient
from pool_upgrade_controller.clients.registry import image_reference
from pool_upgrade_controller.config import TimingConfig, get_timings
from pool_upgrade_controller.errors import ConfigurationError, UpgradeError
from pool_upgrade_controller.models import NodeRef, PoolStatus
from pool_upgrade_controller.retry import retry_constant
from pool_upgrade_controller.utils import format_duration
from pool_upgrade_controller.validation import validate_repository

log = structlog.get_logger()

T = TypeVar("T")


class UpgradeState(StrEnum):
    CHECKING = "checking"
    UPGRADING = "upgrading"
    VERIFYING = "verifying"
    HEALTH_WAITING = "health_waiting"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILED = "failed"


class NodeUpgrader:
    """Drives one node at a time through the upgrade protocol for a single pool.

    The in-progress record on the pool status is a recovery record, not a lock:
    a node listed there is re-verified against the version it reports, and no
    new upgrade command is sent to it.
    """

    def __init__(
        self,
        pool_name: str,
        repository: str,
        agent: NodeAgentClient,
        nodes: K8sNodeClient,
        pools: K8sPoolStore,
        timings: TimingConfig | None = None,
    ) -> None:
        self._pool = pool_name
        self._repository = repository
        self._agent = agent
        self._nodes = nodes
        self._pools = pools
        self._timings = timings or get_timings()

    def _transition(self, node: NodeRef, state: UpgradeState, **context: object) -> None:
        log.info("node_upgrade_state", pool=self._pool, node=node.name, state=str(state), **context)

    async def _retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_constant(
            operation,
            timeout=self._timings.node_retry_timeout,
            unit=self._timings.node_retry_unit,
            jitter=self._timings.node_retry_jitter,
            description=description,
        )

    async def _current_version(self, node: NodeRef) -> str:
        info = await self._retry(lambda: self._agent.get_version(node), f"get version of {node.name}")
        return info.tag

    async def upgrade(self, node: NodeRef, version: str, in_progress: bool = False) -> None:
        """Bring ``node`` to ``version``.

        Args:
            node: The node to upgrade.
            version: Target image tag.
            in_progress: Whether the pool status already records an upgrade for this node.

        Raises:
            ConfigurationError: If the pool's repository is missing or malformed.
            UpgradeError: If any fatal step fails for this node.
        """
        try:
            validate_repository(self._repository)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        try:
            await self._upgrade(node, version, in_progress)
        except Exception as exc:
            self._transition(node, UpgradeState.FAILED, error=str(exc))
            log.error("node_upgrade_failed", pool=self._pool, node=node.name, version=version, error=str(exc))
            raise UpgradeError(node.name, str(exc)) from exc

    async def _upgrade(self, node: NodeRef, version: str, in_progress: bool) -> None:
        self._transition(node, UpgradeState.CHECKING, in_progress=in_progress)
        current = await self._current_version(node)
        up_to_date = current == version

        if up_to_date and not in_progress:
            log.info("node_up_to_date", pool=self._pool, node=node.name, version=current)
            self._transition(node, UpgradeState.DONE)
            return

        if in_progress:
            # A previous attempt already recorded this node; re-verify rather than re-issue.
            log.info("resuming_node_upgrade", pool=self._pool, node=node.name, current=current, target=version)
        else:
            image = image_reference(self._repository, version)
            self._transition(node, UpgradeState.UPGRADING, current=current, target=version, image=image)
            # The record must be durable before the node is told to reboot.
            await self._set_in_progress(node)
            await self._agent.upgrade(node, image)
            log.info("upgrade_requested", pool=self._pool, node=node.name, image=image)

        # Best-effort; cancelled once the node is healthy or the protocol fails.
        log_task = asyncio.create_task(self._stream_logs(node), name=f"node-logs:{node.name}")
        try:
            self._transition(node, UpgradeState.VERIFYING, target=version)
            await self._verify(node, version)

            self._transition(node, UpgradeState.HEALTH_WAITING)
            await self._wait_for_healthy(node)
        finally:
            log_task.cancel()

        self._transition(node, UpgradeState.CLEANING_UP)
        await self._cleanup(node)

        self._transition(node, UpgradeState.DONE, version=version)

    async def _set_in_progress(self, node: NodeRef) -> None:
        def add(status: PoolStatus) -> None:
            status.in_progress.add(node.name)

        await self._pools.mutate_status(self._pool, add)

    async def _remove_in_progress(self, node: NodeRef) -> None:
        def discard(status: PoolStatus) -> None:
            status.in_progress.discard(node.name)

        await self._pools.mutate_status(self._pool, discard)

    async def _stream_logs(self, node: NodeRef) -> None:
        try:
            async for line in self._agent.stream_logs(node):
                log.info("node_log", node=node.name, line=line)
        except Exception as exc:
            log.warning("node_log_stream_failed", node=node.name, error=str(exc))

    async def _verify(self, node: NodeRef, version: str) -> None:
        """Poll the reported version until it matches, under the verification deadline."""
        deadline = self._timings.verify_timeout
        try:
            async with asyncio.timeout(deadline) as window:
                while True:
                    current = await self._current_version(node)
                    if current == version:
                        log.info("node_version_verified", pool=self._pool, node=node.name, version=version)
                        return
                    log.debug("node_version_pending", node=node.name, current=current, target=version)
                    await asyncio.sleep(self._timings.verify_poll_interval)
        except TimeoutError as exc:
            # Only the outer deadline is reported as a verification timeout.
            if not window.expired():
                raise
            msg = f"node did not report version {version} within {format_duration(deadline)}"
            raise TimeoutError(msg) from exc

    async def _check_ready(self, node: NodeRef) -> None:
        if not await self._nodes.node_ready(node.name):
            msg = f"node {node.name} is not ready"
            raise RuntimeError(msg)

    async def _wait_for_healthy(self, node: NodeRef) -> None:
        """Require the node to be seen ready on several consecutive confirmations."""
        attempts = self._timings.health_check_attempts
        for attempt in range(1, attempts + 1):
            await self._retry(lambda: self._check_ready(node), f"wait for {node.name} ready")
            log.debug("node_ready_confirmed", node=node.name, attempt=attempt, of=attempts)
            # Readiness must hold across the pause, not just once.
            await asyncio.sleep(self._timings.health_check_pause)
        log.info("node_healthy", pool=self._pool, node=node.name)

    async def _cleanup(self, node: NodeRef) -> None:
        # Best-effort: failures are logged, never raised.
        try:
            await self._nodes.uncordon(node.name)
        except Exception as exc:
            log.warning("uncordon_failed", node=node.name, error=str(exc))

        try:
            await self._remove_in_progress(node)
        except Exception as exc:
            log.warning("clear_in_progress_failed", pool=self._pool, node=node.name, error=str(exc))

