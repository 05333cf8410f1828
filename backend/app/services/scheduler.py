"""
Scheduler Service

Drives the two periodic orchestration passes:
- assignment_pass: promote due Approved tasks, push Scheduled tasks to nodes
- expiry_sweep: expiry reassignment and dead-node lease reclaim

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Non-Postgres backends (local SQLite) always lead
- Controlled by SCHEDULER_ENABLED env (default: true)

With CELERY_ENABLED the leader only enqueues the pass on the worker;
otherwise the pass runs inline in this process.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db import make_session_factory
from app.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_ASSIGNMENT_PASS = 910_001
LOCK_EXPIRY_SWEEP = 910_002


class SchedulerService:
    """Periodic orchestration passes.

    Uses Postgres pg_try_advisory_lock on each tick so that only
    one backend instance (the leader) executes the job while
    other instances skip silently.
    """

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str):
        """Configure database connection."""
        self._session_factory = make_session_factory(database_url)

    async def _get_session(self) -> AsyncSession:
        if not self._session_factory:
            self.configure(get_settings().async_database_url)
        return self._session_factory()

    @staticmethod
    def _uses_advisory_locks(session: AsyncSession) -> bool:
        return session.bind.dialect.name == "postgresql"

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Try to acquire a Postgres session-level advisory lock (non-blocking).

        Returns True if this instance acquired the lock (is leader for this tick).
        The lock is automatically released when the session/connection closes.
        """
        if not self._uses_advisory_locks(session):
            return True
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        if not self._uses_advisory_locks(session):
            return
        await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return

        if self._running:
            return

        self.scheduler.add_job(
            self._run_assignment_pass,
            IntervalTrigger(seconds=settings.assignment_interval_seconds),
            id="assignment_pass",
            name="Assign scheduled tasks to nodes",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self._run_expiry_sweep,
            IntervalTrigger(seconds=settings.expiry_sweep_interval_seconds),
            id="expiry_sweep",
            name="Expiry reassignment and lease reclaim",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (single-leader mode via advisory locks, celery=%s)",
            settings.celery_enabled,
        )

    def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_leader_tick(
        self,
        job: str,
        lock_key: int,
        run_inline: Callable[[AsyncSession], Awaitable[dict[str, Any]]],
        enqueue: Callable[[], Any],
    ) -> dict[str, Any] | None:
        async with await self._get_session() as session:
            acquired = await self._try_advisory_lock(session, lock_key)
            if not acquired:
                logger.debug("[%s] Advisory lock not acquired, another instance is leader, skipping tick", job)
                return None

            try:
                if get_settings().celery_enabled:
                    async_result = enqueue()
                    logger.info("[%s] LEADER, enqueued on worker (celery_id=%s)", job, async_result.id)
                    return {"enqueued": True, "celery_id": async_result.id}

                logger.info("[%s] LEADER, running inline", job)
                return await run_inline(session)
            finally:
                await self._release_advisory_lock(session, lock_key)

    async def _run_assignment_pass(self):
        """Protected by advisory lock; only one instance executes per tick."""
        from app.services.assignment_monitor import run_assignment_pass

        def enqueue():
            from app.worker.tasks import assignment_pass
            return assignment_pass.delay()

        return await self._run_leader_tick(
            "assignment_pass", LOCK_ASSIGNMENT_PASS, run_assignment_pass, enqueue,
        )

    async def _run_expiry_sweep(self):
        """Protected by advisory lock; only one instance executes per tick."""
        from app.services.expiry_monitor import run_expiry_sweep

        def enqueue():
            from app.worker.tasks import expiry_sweep
            return expiry_sweep.delay()

        return await self._run_leader_tick(
            "expiry_sweep", LOCK_EXPIRY_SWEEP, run_expiry_sweep, enqueue,
        )

    def get_jobs(self) -> list[dict]:
        """Get list of all scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def run_now(self, job_id: str) -> dict:
        """Run a job immediately."""
        job = self.scheduler.get_job(job_id)
        if not job:
            return {"error": f"Job {job_id} not found"}

        try:
            result = await job.func()
            return {"ok": True, "result": result}
        except Exception as e:
            logger.error("Failed to run job %s: %s", job_id, e)
            return {"error": str(e)}


# Global instance
scheduler_service = SchedulerService.get_instance()
