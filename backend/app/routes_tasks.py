from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_session
from app.models import GenerationTask, TaskEvent, TaskSubStep
from app.schemas import (
    ActiveTaskRead,
    DecisionRequest,
    RepostRequest,
    SubStepRead,
    TaskCreate,
    TaskEventRead,
    TaskRead,
    TaskUpdate,
)
from app.services import substep_aggregator, task_service, variant_manager
from app.services.task_state import ACTIVE_STATUSES, get_task

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

SessionDep = Depends(get_session)


@router.post("", response_model=list[TaskRead], status_code=status.HTTP_201_CREATED)
async def create_tasks(payload: TaskCreate, session: AsyncSession = SessionDep):
    """Create one task per account; each is gated immediately."""
    return await task_service.create_tasks(
        session,
        prompt=payload.prompt,
        account_ids=payload.account_ids,
        scheduled_for=payload.scheduled_for,
        target_node_location=payload.target_node_location,
        expiry_hours=payload.expiry_hours,
        estimated_cost=payload.estimated_cost,
        ab_test_group=payload.ab_test_group,
    )


@router.get("", response_model=list[TaskRead])
async def list_tasks(
    status: Optional[str] = Query(default=None),
    account_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = SessionDep,
):
    return await task_service.list_tasks(
        session, status=status, account_id=account_id, limit=limit, offset=offset,
    )


@router.get("/active", response_model=list[ActiveTaskRead])
async def list_active_tasks(session: AsyncSession = SessionDep):
    """Orchestrator view: tasks being executed with their current-attempt sub-steps."""
    res = await session.execute(
        select(GenerationTask)
        .where(GenerationTask.status.in_([s.value for s in ACTIVE_STATUSES]))
        .order_by(GenerationTask.claimed_at.asc(), GenerationTask.id.asc())
    )
    tasks = list(res.scalars().all())

    steps_by_task: dict[int, list[TaskSubStep]] = {t.id: [] for t in tasks}
    if tasks:
        sq = await session.execute(
            select(TaskSubStep)
            .where(TaskSubStep.task_id.in_(list(steps_by_task)))
            .order_by(TaskSubStep.id)
        )
        attempts = {t.id: t.claim_count for t in tasks}
        for step in sq.scalars().all():
            if step.attempt == attempts[step.task_id]:
                steps_by_task[step.task_id].append(step)

    return [
        ActiveTaskRead(
            **TaskRead.model_validate(t).model_dump(),
            sub_steps=[SubStepRead.model_validate(s) for s in steps_by_task[t.id]],
        )
        for t in tasks
    ]


@router.get("/{task_id}", response_model=TaskRead)
async def get_task_endpoint(task_id: int, session: AsyncSession = SessionDep):
    return await get_task(session, task_id)


@router.patch("/{task_id}", response_model=TaskRead)
async def edit_task(task_id: int, payload: TaskUpdate, session: AsyncSession = SessionDep):
    """Edit while Pending, Scheduled or Rejected (409 otherwise)."""
    return await task_service.edit_task(session, task_id, payload.model_dump(exclude_unset=True))


@router.post("/{task_id}/approve", response_model=TaskRead)
async def approve_task(
    task_id: int, payload: DecisionRequest | None = None, session: AsyncSession = SessionDep,
):
    return await task_service.approve_task(session, task_id, reason=payload.reason if payload else None)


@router.post("/{task_id}/reject", response_model=TaskRead)
async def reject_task(
    task_id: int, payload: DecisionRequest | None = None, session: AsyncSession = SessionDep,
):
    return await task_service.reject_task(session, task_id, reason=payload.reason if payload else None)


@router.post("/{task_id}/takedown", response_model=TaskRead)
async def initiate_takedown(
    task_id: int, payload: DecisionRequest | None = None, session: AsyncSession = SessionDep,
):
    return await variant_manager.initiate_takedown(session, task_id, reason=payload.reason if payload else None)


@router.post("/{task_id}/repost", response_model=list[TaskRead], status_code=status.HTTP_201_CREATED)
async def repost_task(task_id: int, payload: RepostRequest, session: AsyncSession = SessionDep):
    return await variant_manager.repost(
        session, task_id, payload.account_ids, ab_test_group=payload.ab_test_group,
    )


@router.get("/{task_id}/ab-test")
async def get_ab_test(task_id: int, session: AsyncSession = SessionDep):
    return await variant_manager.get_ab_test(session, task_id)


@router.get("/{task_id}/sub-steps", response_model=list[SubStepRead])
async def list_sub_steps(
    task_id: int,
    current_only: bool = Query(default=False),
    session: AsyncSession = SessionDep,
):
    return await substep_aggregator.list_sub_steps(session, task_id, current_only=current_only)


@router.get("/{task_id}/events", response_model=list[TaskEventRead])
async def list_events(task_id: int, session: AsyncSession = SessionDep):
    await get_task(session, task_id)
    res = await session.execute(
        select(TaskEvent).where(TaskEvent.task_id == task_id).order_by(TaskEvent.id)
    )
    return list(res.scalars().all())
