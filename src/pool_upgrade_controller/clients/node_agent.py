"""Boundary to the per-node OS agent that reports versions and performs upgrades."""

from __future__ import annotations

import importlib
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from pool_upgrade_controller.errors import ConfigurationError
from pool_upgrade_controller.models import NodeRef, VersionInfo


@runtime_checkable
class NodeAgentClient(Protocol):
    """Remote command-and-control for a node's OS agent.

    Implementations own transport, credentials, and per-call timeouts. Any
    exception raised is treated as a transient RPC failure by the caller.
    """

    async def get_version(self, node: NodeRef) -> VersionInfo:
        """Return the OS version the node is currently running."""
        ...

    async def upgrade(self, node: NodeRef, image: str) -> None:
        """Ask the node to install ``image`` and reboot into it."""
        ...

    def stream_logs(self, node: NodeRef) -> AsyncIterator[str]:
        """Follow the node's system service log, one line per item."""
        ...


def load_node_agent(spec: str) -> NodeAgentClient:
    """Instantiate a node agent from a ``"module:factory"`` reference.

    Raises:
        ConfigurationError: If the reference is malformed, cannot be imported, or
            does not produce a NodeAgentClient.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        msg = f"Invalid node agent reference: {spec!r}. Expected 'module:factory'."
        raise ConfigurationError(msg)

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        msg = f"Cannot import node agent module {module_name!r}: {exc}"
        raise ConfigurationError(msg) from exc

    factory = getattr(module, attr, None)
    if factory is None:
        msg = f"Node agent module {module_name!r} has no attribute {attr!r}."
        raise ConfigurationError(msg)

    agent = factory()
    if not isinstance(agent, NodeAgentClient):
        msg = f"Node agent {spec!r} does not implement get_version, upgrade, and stream_logs."
        raise ConfigurationError(msg)
    return agent
