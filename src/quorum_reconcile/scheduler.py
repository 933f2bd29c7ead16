"""Per-cluster scheduling of reconciliation attempts.

At most one attempt runs per cluster identity. Triggers that arrive while an
attempt is in flight are coalesced into a single follow-up attempt. Distinct
clusters run in parallel up to an operator-wide cap.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from quorum_reconcile.errors import ReconcileError
from quorum_reconcile.resources import ClusterOperator
from quorum_reconcile.state import AttemptResult, ReconciliationContext

logger = logging.getLogger(__name__)

Attempt = Callable[[ReconciliationContext], Awaitable[AttemptResult]]


class ReconcileScheduler:
    """Single-flight attempt runner keyed by (namespace, name)."""

    def __init__(self, attempt: Attempt, max_concurrent: int = 10):
        self.attempt = attempt
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}
        self._pending: dict[tuple[str, str], ReconciliationContext] = {}
        self._closed = False

    def submit(self, context: ReconciliationContext) -> asyncio.Task:
        """
        Schedule an attempt for ``context``.

        Returns the task driving this cluster. If an attempt is already in
        flight the trigger is queued behind it (replacing any trigger queued
        earlier) and the existing task is returned; it resolves to the result
        of the last attempt it ran.
        """
        if self._closed:
            raise RuntimeError("Scheduler is shut down")

        key = context.key
        task = self._inflight.get(key)
        if task is not None and not task.done():
            logger.debug(f"{context}: attempt in flight, coalescing trigger")
            self._pending[key] = context
            return task

        task = asyncio.create_task(self._drive(key, context), name=f"reconcile:{context}")
        self._inflight[key] = task
        task.add_done_callback(_discard_when_done(self._inflight, key))
        return task

    async def _drive(self, key: tuple[str, str], context: ReconciliationContext) -> AttemptResult:
        result = None
        next_context: ReconciliationContext | None = context
        while next_context is not None:
            async with self._semaphore:
                result = await self.attempt(next_context)
            next_context = self._pending.pop(key, None)
        return result

    def in_flight(self, namespace: str, name: str) -> bool:
        task = self._inflight.get((namespace, name))
        return task is not None and not task.done()

    @property
    def active(self) -> int:
        return sum(1 for task in self._inflight.values() if not task.done())

    async def shutdown(self) -> None:
        """Cancel in-flight attempts. No compensating action is taken."""
        self._closed = True
        self._pending.clear()
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Scheduler shut down, cancelled {len(tasks)} attempts")


async def periodic_resync(
    scheduler: ReconcileScheduler,
    clusters: ClusterOperator,
    namespace: str,
    interval_s: float,
    operation_timeout_ms: int = 300_000,
) -> None:
    """Submit every cluster in ``namespace`` once per interval until cancelled."""
    while True:
        try:
            resources = await clusters.list(namespace)
        except ReconcileError as e:
            logger.warning(f"Resync of namespace {namespace} failed to list clusters: {e}")
            resources = []

        for resource in resources:
            scheduler.submit(
                ReconciliationContext(
                    namespace=namespace,
                    name=resource["metadata"]["name"],
                    trigger="resync",
                    operation_timeout_ms=operation_timeout_ms,
                )
            )
        await asyncio.sleep(interval_s)


def _discard_when_done(inflight: dict, key: tuple[str, str]) -> Callable[[asyncio.Task], None]:
    """Done-callback removing ``key`` only if it still maps to the finished task."""

    def discard(task: asyncio.Task) -> None:
        if inflight.get(key) is task:
            del inflight[key]

    return discard
