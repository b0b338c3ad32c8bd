"""Upgrade policies — run the per-node protocol over a pool, serially or with bounded concurrency."""

from __future__ import annotations

import asyncio
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from typing import Protocol

import structlog

from pool_upgrade_controller.errors import UpgradeRunError
from pool_upgrade_controller.models import NodeRef
from pool_upgrade_controller.upgrader.orchestrator import NodeUpgrader
from pool_upgrade_controller.validation import validate_concurrency

log = structlog.get_logger()


class UpgradePolicy(Protocol):
    async def run(self, nodes: Sequence[NodeRef], version: str, in_progress: Collection[str] = ()) -> None:
        """Upgrade every node to ``version``. Raises UpgradeRunError if any node failed."""
        ...


@dataclass(frozen=True)
class Job:
    node: NodeRef
    version: str
    in_progress: bool


@dataclass(frozen=True)
class Result:
    job: Job
    error: BaseException | None = None


def _raise_for_failures(results: Sequence[Result]) -> None:
    failures = {r.job.node.name: r.error for r in results if r.error is not None}
    if failures:
        raise UpgradeRunError(failures)


class SerialPolicy:
    """Upgrade nodes one at a time, in list order. A failure does not stop later nodes."""

    def __init__(self, upgrader: NodeUpgrader) -> None:
        self._upgrader = upgrader

    async def run(self, nodes: Sequence[NodeRef], version: str, in_progress: Collection[str] = ()) -> None:
        results: list[Result] = []
        for node in nodes:
            job = Job(node=node, version=version, in_progress=node.name in in_progress)
            try:
                await self._upgrader.upgrade(job.node, job.version, job.in_progress)
            except Exception as exc:
                results.append(Result(job, exc))
            else:
                results.append(Result(job))
        _raise_for_failures(results)


class ConcurrentPolicy:
    """Upgrade nodes with a fixed pool of workers pulling from a bounded job queue.

    Every job yields exactly one result, and every node gets its attempt no
    matter how its siblings fare.
    """

    def __init__(self, upgrader: NodeUpgrader, concurrency: int) -> None:
        validate_concurrency(concurrency)
        self._upgrader = upgrader
        self.concurrency = concurrency

    async def _worker(
        self,
        worker_id: int,
        jobs: asyncio.Queue[Job | None],
        results: asyncio.Queue[Result],
    ) -> None:
        while True:
            job = await jobs.get()
            if job is None:
                return
            log.info("assigned_worker_to_node", worker=worker_id, node=job.node.name)
            # Exactly one result per job, success or failure.
            error: BaseException | None = None
            try:
                await self._upgrader.upgrade(job.node, job.version, job.in_progress)
            except Exception as exc:
                error = exc
            await results.put(Result(job, error))

    async def run(self, nodes: Sequence[NodeRef], version: str, in_progress: Collection[str] = ()) -> None:
        jobs: asyncio.Queue[Job | None] = asyncio.Queue(maxsize=self.concurrency)
        results: asyncio.Queue[Result] = asyncio.Queue(maxsize=max(len(nodes), 1))
        # Sized so a worker never blocks on reporting while the producer blocks on submitting.

        workers = [asyncio.create_task(self._worker(w, jobs, results)) for w in range(self.concurrency)]
        try:
            for node in nodes:
                await jobs.put(Job(node=node, version=version, in_progress=node.name in in_progress))
            # One stop marker per worker closes the queue.
            for _ in workers:
                await jobs.put(None)

            collected = [await results.get() for _ in nodes]
            await asyncio.gather(*workers)
        finally:
            # No-op after a clean run; stops stragglers if the caller is cancelled.
            for worker in workers:
                worker.cancel()

        _raise_for_failures(collected)


def build_policy(upgrader: NodeUpgrader, concurrency: int) -> UpgradePolicy:
    """Return the serial policy for a concurrency of 1, the concurrent policy otherwise."""
    validate_concurrency(concurrency)
    if concurrency == 1:
        return SerialPolicy(upgrader)
    return ConcurrentPolicy(upgrader, concurrency)
