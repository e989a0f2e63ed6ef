"""Background jobs owned by the process, and startup reconciliation.

Long-running work (repository syncs, cluster computations) runs as named
asyncio tasks on a ``JobRunner`` rather than inside request handlers, so
a client disconnect never cancels it. A process that dies mid-run leaves
rows in ``syncing`` / ``computing``; ``reconcile_interrupted_jobs`` moves
those to a terminal state once their heartbeat or lease has gone stale.
"""

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import update

from product_kb.config import settings
from product_kb.db.database import SessionFactory
from product_kb.db.models import (
    ClusterComputationLog,
    CodebaseConnection,
    ComputeStatus,
    ConnectionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

INTERRUPTED_SYNC_MESSAGE = "Sync interrupted before completion"
INTERRUPTED_COMPUTE_MESSAGE = "Computation interrupted before completion"


class JobRunner:
    """Tracks named background tasks and logs their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._named: dict[str, asyncio.Task] = {}

    def start(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedule a coroutine as a background task.

        Starting a job under a name that is still running keeps the old
        task alive; the name then refers to the new one.
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        self._named[name] = task
        task.add_done_callback(self._on_done)
        logger.debug(f"Started job {name}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        name = task.get_name()
        if self._named.get(name) is task:
            del self._named[name]

        if task.cancelled():
            logger.info(f"Job {name} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Job {name} failed: {error}", exc_info=error)
        else:
            logger.debug(f"Job {name} finished")

    def running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    async def wait(self, name: str) -> None:
        """Wait for the named job to finish (its errors are not re-raised)."""
        task = self._named.get(name)
        if task is not None:
            await asyncio.wait({task})

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def aclose(self, timeout: float = 10.0) -> None:
        """Give running jobs ``timeout`` seconds to finish, then cancel the rest."""
        pending = {task for task in self._tasks if not task.done()}
        if not pending:
            return

        logger.info(f"Waiting for {len(pending)} background job(s) to finish")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
            logger.warning(f"Cancelled {len(still_running)} background job(s) on shutdown")


@dataclass
class ReconcileResult:
    interrupted_syncs: int
    interrupted_computations: int


async def reconcile_interrupted_jobs(session_factory: SessionFactory) -> ReconcileResult:
    """Fail syncs and computations left running past their stale window."""
    now = utcnow()
    sync_stale_before = now - timedelta(minutes=settings.SYNC_STALE_MINUTES)
    lease_stale_before = now - timedelta(minutes=settings.CLUSTER_LEASE_MINUTES)

    async with session_factory() as session:
        syncs = await session.execute(
            update(CodebaseConnection)
            .where(
                CodebaseConnection.status == ConnectionStatus.SYNCING.value,
                CodebaseConnection.updated_at < sync_stale_before,
            )
            .values(
                status=ConnectionStatus.ERROR.value,
                error_message=INTERRUPTED_SYNC_MESSAGE,
                sync_run_id=None,
                updated_at=now,
            )
        )
        computations = await session.execute(
            update(ClusterComputationLog)
            .where(
                ClusterComputationLog.status == ComputeStatus.COMPUTING.value,
                ClusterComputationLog.started_at < lease_stale_before,
            )
            .values(
                status=ComputeStatus.FAILED.value,
                error_message=INTERRUPTED_COMPUTE_MESSAGE,
                lease_token=None,
            )
        )
        await session.commit()

    result = ReconcileResult(
        interrupted_syncs=syncs.rowcount or 0,
        interrupted_computations=computations.rowcount or 0,
    )
    if result.interrupted_syncs or result.interrupted_computations:
        logger.warning(
            f"Reconciled {result.interrupted_syncs} interrupted sync(s) and "
            f"{result.interrupted_computations} interrupted computation(s)"
        )
    return result
