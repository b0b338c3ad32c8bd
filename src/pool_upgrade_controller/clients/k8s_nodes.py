"""Kubernetes Core API wrapper — pool membership, node readiness, uncordon."""

from __future__ import annotations

import asyncio
import threading

import structlog
from kubernetes import client as k8s_client

from pool_upgrade_controller.clients import load_k8s_api_client
from pool_upgrade_controller.models import POOL_LABEL, NodeRef

log = structlog.get_logger()


class K8sNodeClient:
    """Wrapper around the Kubernetes Core V1 API for the node operations an upgrade needs."""

    def __init__(self, kubeconfig_context: str | None = None) -> None:
        self._context = kubeconfig_context
        self._api: k8s_client.CoreV1Api | None = None
        self._lock = threading.Lock()

    def _get_api(self) -> k8s_client.CoreV1Api:
        with self._lock:
            if self._api is None:
                self._api = k8s_client.CoreV1Api(load_k8s_api_client(self._context))
            return self._api

    async def list_pool_nodes(self, pool: str) -> list[NodeRef]:
        """List the nodes labelled as members of ``pool``.

        Each node's address is its InternalIP, which is where its agent listens.
        """
        api = self._get_api()
        try:
            node_list = await asyncio.to_thread(api.list_node, label_selector=f"{POOL_LABEL}={pool}")
        except Exception:
            log.error("failed_to_list_pool_nodes", pool=pool)
            raise

        results: list[NodeRef] = []
        for node in node_list.items:
            address = None
            # The node agent listens on the InternalIP.
            for addr in node.status.addresses or []:
                if addr.type == "InternalIP":
                    address = addr.address
            if address is None:
                log.warning("node_missing_internal_ip", node=node.metadata.name, pool=pool)
            results.append(NodeRef(name=node.metadata.name, address=address))
        return results

    async def node_ready(self, name: str) -> bool:
        """Return whether the node's ``Ready`` condition is ``True``."""
        api = self._get_api()
        node = await asyncio.to_thread(api.read_node, name)
        conditions = {c.type: c.status for c in (node.status.conditions or [])}
        return conditions.get("Ready") == "True"

    async def uncordon(self, name: str) -> None:
        """Mark the node schedulable again."""
        api = self._get_api()
        await asyncio.to_thread(api.patch_node, name, {"spec": {"unschedulable": False}})
        log.info("uncordoned_node", node=name)
