"""
Task lifecycle state machine.

Owns the canonical GenerationTask.status. Every status mutation is a single
compare-and-set:

    UPDATE generation_tasks SET status = :new, ...
    WHERE id = :id AND status = :expected

so concurrent writers (nodes, periodic passes, users) can never skip or
reorder a transition. A CAS that matches zero rows means somebody else moved
the task first; nothing is written and the caller gets a typed error.

Public edges (EDGES) are the only ones reachable from outside the engine.
INTERNAL_EDGES are reserved for the expiry/lease monitor (reclaim to
Scheduled) and the takedown manager (revert to Published).
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import GenerationTask, TaskEvent, TaskStatus, utcnow
from app.services.errors import InvalidTransition, NotFound

logger = logging.getLogger(__name__)

S = TaskStatus

EDGES: dict[TaskStatus, frozenset[TaskStatus]] = {
    S.pending: frozenset({S.pending_approval, S.approved}),
    S.pending_approval: frozenset({S.approved, S.rejected}),
    S.approved: frozenset({S.scheduled}),
    S.scheduled: frozenset({S.generating, S.failed}),
    S.generating: frozenset({S.assembling, S.failed}),
    S.assembling: frozenset({S.uploading, S.failed}),
    S.uploading: frozenset({S.published, S.failed}),
    S.published: frozenset({S.takedown_pending}),
    S.takedown_pending: frozenset({S.takedown_complete, S.failed}),
    S.rejected: frozenset(),
    S.failed: frozenset(),
    S.takedown_complete: frozenset(),
}

INTERNAL_EDGES: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset({
    (S.scheduled, S.scheduled),
    (S.generating, S.scheduled),
    (S.assembling, S.scheduled),
    (S.uploading, S.scheduled),
    (S.takedown_pending, S.published),
})

TERMINAL_STATUSES = frozenset(s for s, targets in EDGES.items() if not targets)
ACTIVE_STATUSES = (S.generating, S.assembling, S.uploading)


def can_transition(current: str, requested: str, *, internal: bool = False) -> bool:
    try:
        src, dst = TaskStatus(current), TaskStatus(requested)
    except ValueError:
        return False
    if dst in EDGES[src]:
        return True
    return internal and (src, dst) in INTERNAL_EDGES


async def get_task(session: AsyncSession, task_id: int) -> GenerationTask:
    task = await session.get(GenerationTask, task_id)
    if not task:
        raise NotFound(f"Task {task_id} not found")
    return task


async def compare_and_set(
    session: AsyncSession,
    task_id: int,
    expected: str,
    new: str,
    values: dict[str, Any] | None = None,
) -> bool:
    """Atomically move task_id from `expected` to `new`. Returns True if this caller won."""
    stmt = (
        update(GenerationTask)
        .where(GenerationTask.id == task_id, GenerationTask.status == TaskStatus(expected).value)
        .values(status=TaskStatus(new).value, updated_at=utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def end_noop(session: AsyncSession) -> None:
    """Close the transaction of a CAS that matched no rows.

    Nothing was written, so commit instead of rollback: loaded objects stay
    usable (expire_on_commit=False) and SQLite write locks are released.
    """
    await session.commit()


def record_event(
    session: AsyncSession,
    task_id: int,
    from_status: str | None,
    to_status: str,
    *,
    actor: str,
    reason: str | None = None,
    payload: dict | None = None,
) -> None:
    session.add(TaskEvent(
        task_id=task_id,
        from_status=TaskStatus(from_status).value if from_status else None,
        to_status=TaskStatus(to_status).value,
        actor=actor,
        reason=reason,
        payload_json=payload,
    ))


async def transition(
    session: AsyncSession,
    task: GenerationTask,
    new_status: str,
    *,
    actor: str,
    reason: str | None = None,
    values: dict[str, Any] | None = None,
    payload: dict | None = None,
    internal: bool = False,
) -> GenerationTask:
    """Validate and apply one lifecycle edge, record it, commit, and refresh `task`.

    Raises:
        InvalidTransition: edge not in the graph, or the task moved concurrently
        NotFound: the task disappeared
    """
    current = task.status
    if not can_transition(current, new_status, internal=internal):
        logger.warning(
            f"[task_state] Rejected task {task.id}: {current} -> {TaskStatus(new_status).value} "
            f"(actor={actor})"
        )
        raise InvalidTransition(task.id, current, TaskStatus(new_status).value)

    won = await compare_and_set(session, task.id, current, new_status, values)
    if not won:
        await end_noop(session)
        actual = await session.scalar(select(GenerationTask.status).where(GenerationTask.id == task.id))
        if actual is None:
            raise NotFound(f"Task {task.id} not found")
        logger.warning(
            f"[task_state] Task {task.id}: expected {current}, found {actual} "
            f"while applying -> {TaskStatus(new_status).value} (actor={actor})"
        )
        raise InvalidTransition(task.id, actual, TaskStatus(new_status).value, "status changed concurrently")

    record_event(session, task.id, current, new_status, actor=actor, reason=reason, payload=payload)
    await session.commit()
    await session.refresh(task)

    logger.info(f"[task_state] Task {task.id}: {current} -> {task.status} (actor={actor})")
    return task
