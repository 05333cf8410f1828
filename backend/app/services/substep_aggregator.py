"""
Sub-step aggregation: node progress reports drive the task forward.

A node reports named sub-steps while it holds a claim. Each report updates
the open (Pending / In Progress) row with the same name for the current
claim attempt, or appends a new one.
After every report the task status is recomputed:

- any Failed sub-step             -> task Failed (error_message from details)
- all sub-steps of the current
  phase Completed                 -> next phase
                                     Generating -> Assembling -> Uploading

Uploading -> Published only happens through report_published(), which
carries the platform URL. Reports from a node that does not hold the claim
are refused with ClaimConflict.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import GenerationTask, SubStepStatus, TaskStatus, TaskSubStep, utcnow
from app.services.errors import ClaimConflict, InvalidTransition
from app.services.task_state import ACTIVE_STATUSES, get_task, transition

logger = logging.getLogger(__name__)

NEXT_PHASE = {
    TaskStatus.generating.value: TaskStatus.assembling,
    TaskStatus.assembling.value: TaskStatus.uploading,
}

_ACTIVE = {s.value for s in ACTIVE_STATUSES}


def _check_holder(task: GenerationTask, node_id: int | None) -> None:
    if node_id is not None and task.claimed_by_node_id != node_id:
        raise ClaimConflict(
            f"Node {node_id} does not hold task {task.id} (holder: {task.claimed_by_node_id})"
        )


async def list_sub_steps(
    session: AsyncSession, task_id: int, *, current_only: bool = False,
) -> list[TaskSubStep]:
    task = await get_task(session, task_id)
    stmt = select(TaskSubStep).where(TaskSubStep.task_id == task_id)
    if current_only:
        stmt = stmt.where(TaskSubStep.attempt == task.claim_count)
    res = await session.execute(stmt.order_by(TaskSubStep.id))
    return list(res.scalars().all())


def derive_status(current: str, steps: list[TaskSubStep]) -> TaskStatus | None:
    """Next task status implied by the current phase's sub-steps, or None to stay put."""
    if any(s.status == SubStepStatus.failed.value for s in steps):
        return TaskStatus.failed
    phase_steps = [s for s in steps if s.phase == current]
    if phase_steps and all(s.status == SubStepStatus.completed.value for s in phase_steps):
        return NEXT_PHASE.get(current)
    return None


async def report_sub_step(
    session: AsyncSession,
    task_id: int,
    step_name: str,
    status: str,
    *,
    node_id: int | None = None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> GenerationTask:
    """Record one sub-step report and recompute the task status.

    Raises:
        NotFound: unknown task
        InvalidTransition: task is not in Generating/Assembling/Uploading
        ClaimConflict: node_id given and it does not hold the claim
    """
    now = now or utcnow()
    status = SubStepStatus(status).value
    task = await get_task(session, task_id)
    if task.status not in _ACTIVE:
        raise InvalidTransition(task.id, task.status, task.status, f"sub-step {step_name!r} reported outside execution")
    _check_holder(task, node_id)

    res = await session.execute(
        select(TaskSubStep)
        .where(
            TaskSubStep.task_id == task.id,
            TaskSubStep.step_name == step_name,
            TaskSubStep.attempt == task.claim_count,
            TaskSubStep.status.in_([SubStepStatus.pending.value, SubStepStatus.in_progress.value]),
        )
        .order_by(TaskSubStep.id.desc())
        .limit(1)
    )
    step = res.scalar_one_or_none()
    if step is None:
        step = TaskSubStep(
            task_id=task.id,
            step_name=step_name,
            phase=task.status,
            attempt=task.claim_count,
            created_at=now,
        )
        session.add(step)

    step.status = status
    step.updated_at = now
    if details:
        step.details = {**(step.details or {}), **details}
    if status == SubStepStatus.in_progress.value and step.started_at is None:
        step.started_at = now
    if status in (SubStepStatus.completed.value, SubStepStatus.failed.value):
        step.started_at = step.started_at or now
        step.completed_at = now
    await session.commit()

    logger.info(f"[substeps] Task {task.id} [{task.status}] {step_name} -> {status}")

    steps = await list_sub_steps(session, task.id, current_only=True)
    target = derive_status(task.status, steps)
    if target is None:
        return task

    if target == TaskStatus.failed:
        message = (details or {}).get("error") or f"sub-step {step_name!r} failed"
        return await _fail_attempt(session, task, step_name, str(message)[:2000], node_id)
    try:
        return await transition(
            session, task, target,
            actor="node",
            reason=f"{task.status} sub-steps completed",
            payload={"node_id": node_id},
        )
    except InvalidTransition:
        # Another report moved the task first; its outcome stands
        await session.refresh(task)
        return task


async def _fail_attempt(
    session: AsyncSession, task: GenerationTask, step_name: str, message: str, node_id: int | None,
) -> GenerationTask:
    """Fail the task for a Failed sub-step, following concurrent phase advances.

    A parallel report may advance the phase between our read and our CAS.
    The failure still applies while the same claim attempt is executing.
    """
    attempt = task.claim_count
    while task.status in _ACTIVE and task.claim_count == attempt:
        try:
            return await transition(
                session, task, TaskStatus.failed,
                actor="node",
                reason=f"sub-step {step_name} failed",
                values={"error_message": message},
                payload={"step_name": step_name, "node_id": node_id},
            )
        except InvalidTransition:
            await session.refresh(task)
            logger.info(f"[substeps] Task {task.id} moved to {task.status} before failing {step_name}; retrying")
    return task


async def report_published(
    session: AsyncSession,
    task_id: int,
    *,
    video_url: str,
    published_at: datetime | None = None,
    node_id: int | None = None,
) -> GenerationTask:
    """Uploading -> Published with the platform URL."""
    task = await get_task(session, task_id)
    _check_holder(task, node_id)
    published_at = published_at or utcnow()
    await transition(
        session, task, TaskStatus.published,
        actor="node",
        reason="published",
        values={"video_url": video_url, "published_at": published_at},
        payload={"video_url": video_url, "node_id": node_id},
    )
    logger.info(f"[substeps] Task {task.id} published: {video_url}")
    return task


async def report_failure(
    session: AsyncSession, task_id: int, *, error: str, node_id: int | None = None,
) -> GenerationTask:
    """Node gave up on the whole task (not tied to one sub-step)."""
    task = await get_task(session, task_id)
    _check_holder(task, node_id)
    return await transition(
        session, task, TaskStatus.failed,
        actor="node",
        reason="node reported failure",
        values={"error_message": error[:2000]},
        payload={"node_id": node_id},
    )
