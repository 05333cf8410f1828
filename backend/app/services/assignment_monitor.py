"""
Assignment monitor: binds Scheduled tasks to eligible online nodes.

Eligibility (affinity):
- node is online (heartbeat within the online window), and
- task.target_node_location is null and node is a Server, or
- task.target_node_location == node.location (any node type).

Claiming is one CAS: Scheduled -> Generating with the claim columns set.
If two nodes race, exactly one UPDATE matches the row; the other gets
ClaimConflict and moves on. Claims come from two directions:
- pull: a node polls claim_next() for the oldest due task it may run
- push: run_assignment_pass() hands due tasks to the least-loaded node
Both end in claim_task(), so the "one holder per task" rule is shared.

A task with no eligible online node stays Scheduled and is retried on the
next tick (reason "no_eligible_node"); that is a waiting state, not a failure.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import ExecutionNode, GenerationTask, TaskStatus, utcnow
from app.services.errors import (
    REASON_NO_ELIGIBLE_NODE,
    ClaimConflict,
    NodeNotEligible,
    OrchestratorError,
)
from app.services.node_registry import (
    count_active_claims,
    get_node,
    is_online,
    is_server,
    list_nodes,
    location_is_non_server,
)
from app.services.task_state import compare_and_set, end_noop, get_task, record_event
from app.services.task_service import is_due, promote_if_due
from app.settings import get_settings

logger = logging.getLogger(__name__)


def is_eligible(task: GenerationTask, node: ExecutionNode, now: datetime | None = None) -> bool:
    if not is_online(node, now):
        return False
    if task.target_node_location is None:
        return is_server(node)
    return task.target_node_location == node.location


def violates_expiry_invariant(task: GenerationTask, nodes: list[ExecutionNode]) -> bool:
    """Non-Server targeted tasks may not leave Scheduled without expires_at."""
    return task.expires_at is None and location_is_non_server(nodes, task.target_node_location)


async def _due_scheduled_tasks(session: AsyncSession, now: datetime, limit: int) -> list[GenerationTask]:
    res = await session.execute(
        select(GenerationTask)
        .where(and_(
            GenerationTask.status == TaskStatus.scheduled.value,
            or_(GenerationTask.scheduled_for.is_(None), GenerationTask.scheduled_for <= now),
        ))
        .order_by(GenerationTask.created_at.asc(), GenerationTask.id.asc())
        .limit(limit)
    )
    return list(res.scalars().all())


async def claim_task(
    session: AsyncSession,
    task_id: int,
    node_id: int,
    *,
    now: datetime | None = None,
    actor: str = "node",
) -> GenerationTask:
    """Atomically claim a Scheduled task for a node.

    Raises:
        NotFound: unknown task or node
        NodeNotEligible: node offline / wrong affinity / task not yet due
        ClaimConflict: task is no longer Scheduled (another claimer won)
    """
    now = now or utcnow()
    node = await get_node(session, node_id)
    task = await get_task(session, task_id)

    if task.status != TaskStatus.scheduled.value:
        raise ClaimConflict(f"Task {task_id} is {task.status}, not Scheduled")
    if not is_eligible(task, node, now):
        raise NodeNotEligible(f"Node {node_id} is not eligible for task {task_id}")
    if not is_due(task, now):
        raise NodeNotEligible(f"Task {task_id} is not due until {task.scheduled_for.isoformat()}")
    if violates_expiry_invariant(task, await list_nodes(session)):
        raise NodeNotEligible(f"Task {task_id} targets a non-Server node but has no expiry")

    won = await compare_and_set(
        session, task.id, TaskStatus.scheduled, TaskStatus.generating,
        values={
            "claimed_by_node_id": node.id,
            "claimed_at": now,
            "claim_count": GenerationTask.claim_count + 1,
        },
    )
    if not won:
        await end_noop(session)
        logger.info(f"[assignment] Node {node_id} lost claim race for task {task_id}")
        raise ClaimConflict(f"Task {task_id} was claimed by another node")

    record_event(
        session, task.id, TaskStatus.scheduled, TaskStatus.generating,
        actor=actor, reason="claimed", payload={"node_id": node.id},
    )
    await session.commit()
    await session.refresh(task)
    logger.info(f"[assignment] Task {task_id} claimed by node {node_id} ({node.node_type} @ {node.location})")
    return task


async def claim_next(
    session: AsyncSession, node_id: int, *, now: datetime | None = None,
) -> GenerationTask | None:
    """Pull model: claim the oldest due Scheduled task this node may run, or None."""
    now = now or utcnow()
    node = await get_node(session, node_id)
    if not is_online(node, now):
        return None

    nodes = await list_nodes(session)
    tasks = await _due_scheduled_tasks(session, now, get_settings().claim_batch_size)
    # Snapshots: a lost race must not expire the objects we are iterating
    session.expunge_all()

    for task in tasks:
        if not is_eligible(task, node, now) or violates_expiry_invariant(task, nodes):
            continue
        try:
            return await claim_task(session, task.id, node_id, now=now)
        except (ClaimConflict, NodeNotEligible):
            continue
    return None


async def list_node_tasks(session: AsyncSession, node_id: int) -> list[GenerationTask]:
    """Tasks currently held by a node (what it should be executing)."""
    await get_node(session, node_id)
    res = await session.execute(
        select(GenerationTask)
        .where(
            GenerationTask.claimed_by_node_id == node_id,
            GenerationTask.status.in_([
                TaskStatus.generating.value, TaskStatus.assembling.value, TaskStatus.uploading.value,
            ]),
        )
        .order_by(GenerationTask.claimed_at.asc())
    )
    return list(res.scalars().all())


async def _promote_due_approved(session: AsyncSession, now: datetime, limit: int) -> list[int]:
    res = await session.execute(
        select(GenerationTask)
        .where(and_(
            GenerationTask.status == TaskStatus.approved.value,
            or_(GenerationTask.scheduled_for.is_(None), GenerationTask.scheduled_for <= now),
        ))
        .order_by(GenerationTask.created_at.asc())
        .limit(limit)
    )
    promoted: list[int] = []
    for task in res.scalars().all():
        try:
            if await promote_if_due(session, task, now=now):
                promoted.append(task.id)
        except OrchestratorError as e:
            logger.info(f"[assignment] Task {task.id} not promoted: {e}")
    return promoted


async def run_assignment_pass(
    session: AsyncSession, *, dry_run: bool = False, now: datetime | None = None,
) -> dict[str, Any]:
    """One monitor tick: promote due Approved tasks, then push due Scheduled tasks to nodes.

    Returns a report dict.
    """
    now = now or utcnow()
    batch = get_settings().claim_batch_size

    promoted: list[int] = [] if dry_run else await _promote_due_approved(session, now, batch)

    nodes = await list_nodes(session)
    online = [n for n in nodes if is_online(n, now)]
    load: dict[int, int] = {n.id: await count_active_claims(session, n.id) for n in online}
    tasks = await _due_scheduled_tasks(session, now, batch)
    session.expunge_all()

    assigned: list[dict] = []
    waiting: list[dict] = []
    errors: list[dict] = []

    for task in tasks:
        if violates_expiry_invariant(task, nodes):
            waiting.append({"task_id": task.id, "reason": "missing_expiry"})
            continue

        candidates = [n for n in online if is_eligible(task, n, now)]
        if not candidates:
            waiting.append({
                "task_id": task.id,
                "reason": REASON_NO_ELIGIBLE_NODE,
                "target_node_location": task.target_node_location,
            })
            continue

        node = min(candidates, key=lambda n: (load.get(n.id, 0), n.id))
        if dry_run:
            assigned.append({"task_id": task.id, "node_id": node.id, "dry_run": True})
            load[node.id] = load.get(node.id, 0) + 1
            continue

        try:
            await claim_task(session, task.id, node.id, now=now, actor="monitor")
        except (ClaimConflict, NodeNotEligible):
            # A polling node got there first, or the task changed under us
            continue
        except Exception as e:
            logger.exception(f"[assignment] Task {task.id} assignment failed")
            await session.rollback()
            errors.append({"task_id": task.id, "error": str(e)[:500]})
            continue

        load[node.id] = load.get(node.id, 0) + 1
        assigned.append({"task_id": task.id, "node_id": node.id})

    logger.info(
        f"[assignment] Promoted {len(promoted)}, assigned {len(assigned)}, "
        f"waiting {len(waiting)}, errors {len(errors)}, online_nodes={len(online)}, dry_run={dry_run}"
    )
    return {
        "promoted": promoted,
        "assigned_count": len(assigned),
        "waiting_count": len(waiting),
        "assigned": assigned,
        "waiting": waiting,
        "errors": errors,
        "online_nodes": len(online),
        "dry_run": dry_run,
        "run_at": now.isoformat(),
    }
