"""
Expiry sweep: task-expiry insurance and claim leases.

Expiry insurance (tasks aimed at MobileProxy / DesktopCompanion nodes):
- now > expires_at and the task is still Scheduled, or it is in
  Generating/Assembling/Uploading with no sub-step progress within
  SUBSTEP_GRACE_MINUTES
- first time: clear target_node_location (any online Server may take it),
  reset to Scheduled, open a new window of expiry_hours, log it
- already reassigned once: mark Failed (no reassignment loops)

The target type is taken from the task itself: expires_at is only ever set
for non-Server targets, so a task keeps its insurance even when the node
at its location is later deleted or retyped. A Scheduled task whose
location became non-Server after it was scheduled gets its window opened
here.

Claim lease (any node type):
- task in Generating/Assembling/Uploading, holder's heartbeat is stale
  and no sub-step progress within the grace period
- reset to Scheduled with the claim cleared, keeping the target
- after SERVER_LEASE_MAX_RECLAIMS reclaims: mark Failed

Each task is handled in isolation: one failure is logged and the sweep
continues.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import GenerationTask, TaskStatus, TaskSubStep, utcnow
from app.services.node_registry import is_online, is_server, list_nodes
from app.services.task_state import ACTIVE_STATUSES, transition
from app.settings import get_settings

logger = logging.getLogger(__name__)

WATCHED_STATUSES = (TaskStatus.scheduled, *ACTIVE_STATUSES)


async def last_progress_at(session: AsyncSession, task: GenerationTask) -> datetime:
    """Latest sign of life for the current claim: a sub-step update or the claim itself."""
    latest = await session.scalar(
        select(func.max(TaskSubStep.updated_at)).where(and_(
            TaskSubStep.task_id == task.id,
            TaskSubStep.attempt == task.claim_count,
        ))
    )
    marks = [m for m in (latest, task.claimed_at, task.updated_at) if m is not None]
    return max(marks)


RELEASE_CLAIM = {"claimed_by_node_id": None, "claimed_at": None}


async def _reassign(session: AsyncSession, task: GenerationTask, now: datetime) -> None:
    hours = task.expiry_hours if task.expiry_hours is not None else get_settings().default_expiry_hours
    old_target = task.target_node_location
    await transition(
        session, task, TaskStatus.scheduled,
        actor="expiry",
        reason="expiry reassignment",
        internal=True,
        values={
            **RELEASE_CLAIM,
            "original_target_node_location": old_target,
            "target_node_location": None,
            "expires_at": now + timedelta(hours=hours),
            "reassign_count": GenerationTask.reassign_count + 1,
        },
        payload={"from_location": old_target, "new_expires_in_hours": hours},
    )
    logger.info(
        f"[expiry] Task {task.id} reassigned: target {old_target!r} -> any Server, "
        f"new window {hours}h"
    )


async def _open_window(session: AsyncSession, task: GenerationTask, now: datetime) -> None:
    hours = task.expiry_hours if task.expiry_hours is not None else get_settings().default_expiry_hours
    await transition(
        session, task, TaskStatus.scheduled,
        actor="expiry",
        reason="expiry window opened",
        internal=True,
        values={"expires_at": now + timedelta(hours=hours), "expiry_hours": hours},
        payload={"target_node_location": task.target_node_location, "expires_in_hours": hours},
    )
    logger.info(f"[expiry] Task {task.id} now targets a non-Server node; window of {hours}h opened")


async def _fail(session: AsyncSession, task: GenerationTask, message: str) -> None:
    await transition(
        session, task, TaskStatus.failed,
        actor="expiry",
        reason=message,
        values={"error_message": message},
    )
    logger.warning(f"[expiry] Task {task.id} failed: {message}")


async def _reclaim(session: AsyncSession, task: GenerationTask, holder: int | None) -> None:
    await transition(
        session, task, TaskStatus.scheduled,
        actor="expiry",
        reason="claim lease lost",
        internal=True,
        values={**RELEASE_CLAIM, "reclaim_count": GenerationTask.reclaim_count + 1},
        payload={"node_id": holder},
    )
    logger.info(f"[expiry] Task {task.id} reclaimed from offline node {holder}")


async def run_expiry_sweep(
    session: AsyncSession, *, dry_run: bool = False, now: datetime | None = None,
) -> dict[str, Any]:
    """Reassign expired non-Server tasks and reclaim tasks held by dead nodes.

    Returns a report dict.
    """
    settings = get_settings()
    now = now or utcnow()
    grace = timedelta(minutes=settings.substep_grace_minutes)

    nodes = await list_nodes(session)
    non_server_locations = {n.location for n in nodes if not is_server(n)}
    online_ids = {n.id for n in nodes if is_online(n, now)}

    ids_q = await session.execute(
        select(GenerationTask.id)
        .where(GenerationTask.status.in_([s.value for s in WATCHED_STATUSES]))
        .order_by(GenerationTask.id)
    )
    task_ids = [row[0] for row in ids_q.all()]

    items: list[dict] = []
    errors: list[dict] = []

    for task_id in task_ids:
        try:
            task = await session.get(GenerationTask, task_id, populate_existing=True)
            if task is None:
                continue
            active = task.status != TaskStatus.scheduled.value
            stuck = active and await last_progress_at(session, task) < now - grace
            expired = task.expires_at is not None and now > task.expires_at
            item = {"task_id": task.id, "status": task.status}

            if (
                not active
                and task.expires_at is None
                and task.target_node_location in non_server_locations
            ):
                item["action"] = "open_window"
                if not dry_run:
                    await _open_window(session, task, now)
            elif expired and (not active or stuck):
                if task.reassign_count >= 1:
                    item["action"] = "fail_expired_again"
                    if not dry_run:
                        await _fail(session, task, "expired again after reassignment")
                elif task.target_node_location is not None:
                    item["action"] = "reassign"
                    item["from_location"] = task.target_node_location
                    if not dry_run:
                        await _reassign(session, task, now)
                else:
                    continue
            elif stuck and task.claimed_by_node_id not in online_ids:
                holder = task.claimed_by_node_id
                item["node_id"] = holder
                if task.reclaim_count >= settings.server_lease_max_reclaims:
                    item["action"] = "fail_lease_exhausted"
                    if not dry_run:
                        await _fail(
                            session, task,
                            f"claim lease lost {task.reclaim_count + 1} times (node offline)",
                        )
                else:
                    item["action"] = "reclaim"
                    if not dry_run:
                        await _reclaim(session, task, holder)
            else:
                continue

            if dry_run:
                item["action"] = f"would_{item['action']}"
            items.append(item)
        except Exception as e:
            logger.exception(f"[expiry] Task {task_id} sweep failed")
            await session.rollback()
            errors.append({"task_id": task_id, "error": str(e)[:500]})

    counts: dict[str, int] = {}
    for it in items:
        counts[it["action"]] = counts.get(it["action"], 0) + 1

    logger.info(f"[expiry] Swept {len(task_ids)} tasks: {counts or 'nothing to do'} (dry_run={dry_run})")
    return {
        "checked": len(task_ids),
        "actions": counts,
        "items": items,
        "errors": errors,
        "dry_run": dry_run,
        "run_at": now.isoformat(),
        "settings": {
            "substep_grace_minutes": settings.substep_grace_minutes,
            "server_lease_max_reclaims": settings.server_lease_max_reclaims,
        },
    }
