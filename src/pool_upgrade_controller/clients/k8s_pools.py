"""Pool custom resource store — durable pool status, including the in-progress record."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable

import structlog
from kubernetes import client as k8s_client
from kubernetes.client.exceptions import ApiException

from pool_upgrade_controller.clients import load_k8s_api_client
from pool_upgrade_controller.errors import PoolNotFoundError
from pool_upgrade_controller.models import POOL_GROUP, POOL_PLURAL, POOL_VERSION, Pool, PoolStatus

log = structlog.get_logger()

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409


class K8sPoolStore:
    """Reads and writes ``pools.upgrade.talos.dev`` objects in one namespace.

    Status writes carry the ``resourceVersion`` that was read, so concurrent
    writers are detected by the API server and retried here on conflict.
    """

    def __init__(self, namespace: str, kubeconfig_context: str | None = None, conflict_retries: int = 5) -> None:
        self._namespace = namespace
        self._context = kubeconfig_context
        self._conflict_retries = conflict_retries
        self._api: k8s_client.CustomObjectsApi | None = None
        self._lock = threading.Lock()

    def _get_api(self) -> k8s_client.CustomObjectsApi:
        with self._lock:
            if self._api is None:
                self._api = k8s_client.CustomObjectsApi(load_k8s_api_client(self._context))
            return self._api

    async def get(self, name: str) -> Pool:
        """Fetch a pool.

        Raises:
            PoolNotFoundError: If the pool does not exist.
        """
        api = self._get_api()
        try:
            obj = await asyncio.to_thread(
                api.get_namespaced_custom_object,
                POOL_GROUP,
                POOL_VERSION,
                self._namespace,
                POOL_PLURAL,
                name,
            )
        except ApiException as exc:
            if exc.status == HTTP_NOT_FOUND:
                msg = f"Pool {self._namespace}/{name} not found"
                raise PoolNotFoundError(msg) from exc
            log.error("failed_to_get_pool", pool=name, namespace=self._namespace, status=exc.status)
            raise
        return Pool.from_resource(obj)

    async def update_status(self, pool: Pool) -> Pool:
        """Write the pool's status subresource and return the stored result."""
        api = self._get_api()
        obj = await asyncio.to_thread(
            api.replace_namespaced_custom_object_status,
            POOL_GROUP,
            POOL_VERSION,
            self._namespace,
            POOL_PLURAL,
            pool.name,
            pool.to_resource(),
        )
        return Pool.from_resource(obj)

    async def mutate_status(self, name: str, mutate: Callable[[PoolStatus], None]) -> Pool | None:
        """Read-modify-write the pool status, retrying on write conflicts.

        Returns None when the pool has been deleted in the meantime.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                pool = await self.get(name)
            except PoolNotFoundError:
                log.debug("pool_deleted", pool=name, namespace=self._namespace)
                return None

            # Applied to a fresh read on every attempt.
            mutate(pool.status)

            try:
                return await self.update_status(pool)
            except ApiException as exc:
                if exc.status == HTTP_NOT_FOUND:
                    log.debug("pool_deleted", pool=name, namespace=self._namespace)
                    return None
                if exc.status != HTTP_CONFLICT or attempt >= self._conflict_retries:
                    log.error("failed_to_update_pool_status", pool=name, status=exc.status, attempt=attempt)
                    raise
                log.debug("pool_status_conflict", pool=name, attempt=attempt)
