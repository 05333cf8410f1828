"""
Operations endpoints: health, on-demand passes.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_session
from app.models import GenerationTask, TaskStatus, utcnow
from app.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ops", tags=["ops"])

SessionDep = Depends(get_session)


@router.get("/health")
async def health_endpoint(session: AsyncSession = SessionDep):
    """System health overview: task counts, node liveness, waiting tasks, scheduler status."""
    from app.services.assignment_monitor import is_eligible
    from app.services.node_registry import is_online, list_nodes
    from app.services.scheduler import scheduler_service

    now = utcnow()
    settings = get_settings()

    res = await session.execute(
        select(GenerationTask.status, func.count(GenerationTask.id)).group_by(GenerationTask.status)
    )
    counts = {s.value: 0 for s in TaskStatus}
    counts.update({row[0]: row[1] for row in res.all()})

    nodes = await list_nodes(session)
    online = [n for n in nodes if is_online(n, now)]

    sq = await session.execute(
        select(GenerationTask).where(GenerationTask.status == TaskStatus.scheduled.value)
    )
    waiting = sum(
        1 for t in sq.scalars().all()
        if not any(is_eligible(t, n, now) for n in online)
    )

    return {
        "status": "ok",
        "now": now.isoformat(),
        "tasks_by_status": counts,
        "nodes": {"total": len(nodes), "online": len(online), "offline": len(nodes) - len(online)},
        "waiting_no_eligible_node": waiting,
        "scheduler": {
            "enabled": settings.scheduler_enabled,
            "running": scheduler_service.is_running(),
            "celery_enabled": settings.celery_enabled,
        },
    }


@router.get("/preflight")
async def preflight_endpoint(
    fresh: bool = Query(default=False),
    session: AsyncSession = SessionDep,
):
    """Database and broker reachability (cached 60s unless fresh=true)."""
    from app.services.preflight import run_preflight
    return await run_preflight(session, use_cache=not fresh)


@router.post("/expiry-sweep")
async def expiry_sweep_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
):
    """Run the expiry / lease sweep now."""
    from app.services.expiry_monitor import run_expiry_sweep
    return await run_expiry_sweep(session, dry_run=dry_run)


@router.post("/assignment-pass")
async def assignment_pass_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
):
    """Run one assignment pass now."""
    from app.services.assignment_monitor import run_assignment_pass
    return await run_assignment_pass(session, dry_run=dry_run)
