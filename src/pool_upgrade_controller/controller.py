"""Controller entry point — wires clients, resolvers, and one reconcile loop per pool."""

from __future__ import annotations

import asyncio
import sys

import structlog

from pool_upgrade_controller.clients.k8s_nodes import K8sNodeClient
from pool_upgrade_controller.clients.k8s_pools import K8sPoolStore
from pool_upgrade_controller.clients.node_agent import NodeAgentClient, load_node_agent
from pool_upgrade_controller.clients.registry import RegistryClient
from pool_upgrade_controller.config import ControllerConfig, TimingConfig, load_controller_config
from pool_upgrade_controller.errors import ConfigurationError
from pool_upgrade_controller.reconciler import PoolReconciler
from pool_upgrade_controller.versions.resolver import ResolverManager

# Configure structlog for JSON output to stderr
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)

log = structlog.get_logger()


async def reconcile_loop(reconciler: PoolReconciler, pool: str, timings: TimingConfig) -> None:
    """Reconcile ``pool`` forever, sleeping as each pass asks."""
    while True:
        try:
            result = await reconciler.reconcile(pool)
        except Exception as exc:
            log.error("reconcile_failed", pool=pool, error=str(exc))
            delay = timings.reconcile_retry_interval
        else:
            # No requeue means paused, missing, or unscheduled: keep polling for changes.
            delay = timings.paused_poll_interval if result.requeue_after is None else result.requeue_after
        log.debug("next_reconcile", pool=pool, seconds=round(delay, 1))
        await asyncio.sleep(delay)


async def run_controller(config: ControllerConfig, agent: NodeAgentClient) -> None:
    timings = config.timings
    nodes = K8sNodeClient(config.kubeconfig_context)
    pools = K8sPoolStore(config.namespace, config.kubeconfig_context)

    def registry_factory(url: str) -> RegistryClient:
        return RegistryClient(
            url,
            username=config.registry_username,
            password=config.registry_password,
            timeout=timings.registry_timeout,
        )

    resolvers = ResolverManager(registry_factory, config.channels, timings)
    reconciler = PoolReconciler(pools, nodes, agent, resolvers, timings)

    log.info("controller_started", namespace=config.namespace, pools=list(config.pools), channels=list(config.channels))
    try:
        async with asyncio.TaskGroup() as tg:
            for pool in config.pools:
                tg.create_task(reconcile_loop(reconciler, pool, timings), name=f"reconcile:{pool}")
    finally:
        await resolvers.aclose()


def main() -> None:
    try:
        config = load_controller_config()
        agent = load_node_agent(config.node_agent)
    except (FileNotFoundError, ConfigurationError) as exc:
        log.error("invalid_configuration", error=str(exc))
        sys.exit(1)

    try:
        asyncio.run(run_controller(config, agent))
    except KeyboardInterrupt:
        log.info("controller_stopped")


if __name__ == "__main__":
    main()
