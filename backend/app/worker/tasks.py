"""
Celery tasks for the orchestration passes.

orchestrator.assignment_pass and orchestrator.expiry_sweep run the same
async passes as the in-process scheduler, each in a fresh event loop via
asyncio.run() with its own engine.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from app.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def _get_async_db_url() -> str:
    from app.settings import get_settings
    return get_settings().async_database_url


async def _run_pass(run: Callable[..., Awaitable[dict[str, Any]]], dry_run: bool) -> dict[str, Any]:
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    engine = create_async_engine(_get_async_db_url(), echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with session_factory() as session:
            return await run(session, dry_run=dry_run)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="orchestrator.assignment_pass", queue="orchestrator")
def assignment_pass(self, dry_run: bool = False) -> dict:
    from app.services.assignment_monitor import run_assignment_pass

    logger.info(f"[worker] assignment_pass start (celery_id={self.request.id})")
    try:
        result = asyncio.run(_run_pass(run_assignment_pass, dry_run))
    except Exception as e:
        logger.error(f"[worker] assignment_pass failed: {e}")
        raise
    logger.info(
        f"[worker] assignment_pass done: assigned={result['assigned_count']} "
        f"waiting={result['waiting_count']} errors={len(result['errors'])}"
    )
    return result


@celery_app.task(bind=True, name="orchestrator.expiry_sweep", queue="orchestrator")
def expiry_sweep(self, dry_run: bool = False) -> dict:
    from app.services.expiry_monitor import run_expiry_sweep

    logger.info(f"[worker] expiry_sweep start (celery_id={self.request.id})")
    try:
        result = asyncio.run(_run_pass(run_expiry_sweep, dry_run))
    except Exception as e:
        logger.error(f"[worker] expiry_sweep failed: {e}")
        raise
    logger.info(f"[worker] expiry_sweep done: {result['actions']} errors={len(result['errors'])}")
    return result
