"""Tests for background jobs and startup reconciliation."""

import asyncio
from datetime import timedelta

import pytest

from product_kb.db.models import ClusterComputationLog, CodebaseConnection, utcnow
from product_kb.jobs import (
    INTERRUPTED_COMPUTE_MESSAGE,
    INTERRUPTED_SYNC_MESSAGE,
    JobRunner,
    reconcile_interrupted_jobs,
)


class TestJobRunner:
    """Tests for JobRunner."""

    @pytest.mark.asyncio
    async def test_named_job_runs_to_completion(self):
        runner = JobRunner()
        gate = asyncio.Event()
        done = []

        async def job():
            await gate.wait()
            done.append(True)

        runner.start("work", job())
        assert runner.running("work")
        assert runner.active_count == 1

        gate.set()
        await runner.wait("work")

        assert done == [True]
        assert not runner.running("work")
        assert runner.active_count == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        runner = JobRunner()

        async def job():
            raise RuntimeError("boom")

        runner.start("broken", job())
        await runner.wait("broken")
        await asyncio.sleep(0)

        assert "Job broken failed: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_wait_for_unknown_job(self):
        await JobRunner().wait("nothing")

    @pytest.mark.asyncio
    async def test_aclose_cancels_stragglers(self):
        runner = JobRunner()
        cancelled = []

        async def job():
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        runner.start("slow", job())
        await asyncio.sleep(0)
        await runner.aclose(timeout=0.01)

        assert cancelled == [True]
        assert runner.active_count == 0


class TestReconcile:
    """Tests for reconcile_interrupted_jobs."""

    @pytest.mark.asyncio
    async def test_stale_work_is_failed(self, session_factory):
        old = utcnow() - timedelta(minutes=30)
        async with session_factory() as session:
            session.add_all(
                [
                    CodebaseConnection(
                        id="stale", workspace_id="ws-a", repo_url="acme/a", repo_name="acme/a",
                        status="syncing", sync_run_id="run-1", updated_at=old,
                    ),
                    CodebaseConnection(
                        id="live", workspace_id="ws-a", repo_url="acme/b", repo_name="acme/b",
                        status="syncing", sync_run_id="run-2", updated_at=utcnow(),
                    ),
                    ClusterComputationLog(
                        workspace_id="ws-a", status="computing", lease_token="t", started_at=old,
                    ),
                    ClusterComputationLog(
                        workspace_id="ws-b", status="computing", lease_token="t", started_at=utcnow(),
                    ),
                ]
            )
            await session.commit()

        result = await reconcile_interrupted_jobs(session_factory)

        assert result.interrupted_syncs == 1
        assert result.interrupted_computations == 1
        async with session_factory() as session:
            stale = await session.get(CodebaseConnection, "stale")
            live = await session.get(CodebaseConnection, "live")
            log_a = await session.get(ClusterComputationLog, "ws-a")
            log_b = await session.get(ClusterComputationLog, "ws-b")

        assert stale.status == "error"
        assert stale.error_message == INTERRUPTED_SYNC_MESSAGE
        assert stale.sync_run_id is None
        assert live.status == "syncing"
        assert log_a.status == "failed"
        assert log_a.error_message == INTERRUPTED_COMPUTE_MESSAGE
        assert log_a.lease_token is None
        assert log_b.status == "computing"

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, session_factory):
        result = await reconcile_interrupted_jobs(session_factory)
        assert (result.interrupted_syncs, result.interrupted_computations) == (0, 0)
