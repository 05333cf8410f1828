"""
Task service: user-facing task operations.

Creation runs every new task through the approval gate immediately
(Pending -> Pending Approval | Approved). Approved tasks whose schedule is
due are promoted to Scheduled here and by the assignment pass.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Account, GenerationTask, TaskStatus, utcnow
from app.services import approval_gate
from app.services.errors import NotFound, TaskNotEditable
from app.services.node_registry import resolve_target_is_non_server
from app.services.task_state import compare_and_set, end_noop, get_task, record_event, transition
from app.settings import get_settings

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = {TaskStatus.pending.value, TaskStatus.scheduled.value, TaskStatus.rejected.value}
EDITABLE_FIELDS = (
    "prompt",
    "account_id",
    "scheduled_for",
    "target_node_location",
    "expiry_hours",
    "estimated_cost",
    "ab_test_group",
)
GATED_FIELDS = ("estimated_cost", "account_id")


def compute_expires_at(
    scheduled_for: datetime | None, expiry_hours: float, now: datetime,
) -> datetime:
    """Expiry window starts at the scheduled time (or now when unscheduled)."""
    start = scheduled_for or now
    return start + timedelta(hours=expiry_hours)


async def _expiry_fields(
    session: AsyncSession,
    target_node_location: str | None,
    scheduled_for: datetime | None,
    expiry_hours: float | None,
    now: datetime,
) -> dict[str, Any]:
    if not await resolve_target_is_non_server(session, target_node_location):
        return {"expires_at": None, "expiry_hours": expiry_hours}
    hours = expiry_hours if expiry_hours is not None else get_settings().default_expiry_hours
    return {
        "expires_at": compute_expires_at(scheduled_for, hours, now),
        "expiry_hours": hours,
    }


async def get_account(session: AsyncSession, account_id: int) -> Account:
    account = await session.get(Account, account_id)
    if not account:
        raise NotFound(f"Account {account_id} not found")
    return account


async def create_tasks(
    session: AsyncSession,
    *,
    prompt: str,
    account_ids: list[int],
    scheduled_for: datetime | None = None,
    target_node_location: str | None = None,
    expiry_hours: float | None = None,
    estimated_cost=None,
    ab_test_group: str | None = None,
    variant_of_task_id: int | None = None,
    actor: str = "user",
    now: datetime | None = None,
) -> list[GenerationTask]:
    """Create one task per account and gate each independently."""
    now = now or utcnow()
    accounts = [await get_account(session, account_id) for account_id in account_ids]
    expiry = await _expiry_fields(session, target_node_location, scheduled_for, expiry_hours, now)

    created: list[GenerationTask] = []
    for account in accounts:
        task = GenerationTask(
            account_id=account.id,
            prompt=prompt,
            status=TaskStatus.pending.value,
            scheduled_for=scheduled_for,
            target_node_location=target_node_location,
            estimated_cost=estimated_cost,
            ab_test_group=ab_test_group,
            variant_of_task_id=variant_of_task_id,
            created_at=now,
            **expiry,
        )
        session.add(task)
        await session.flush()
        record_event(session, task.id, None, TaskStatus.pending, actor=actor, reason="created")
        await session.commit()
        await session.refresh(task)

        await run_gate(session, task, account, now=now)
        created.append(task)

    logger.info(f"[tasks] Created {len(created)} task(s) for accounts {account_ids} (actor={actor})")
    return created


async def run_gate(
    session: AsyncSession, task: GenerationTask, account: Account, *, now: datetime | None = None,
) -> GenerationTask:
    now = now or utcnow()
    decision = await approval_gate.evaluate_for_task(session, task, account, now)
    await transition(
        session, task, decision.target_status,
        actor="gate",
        reason=decision.reason,
        values={"approval_reason": decision.reason},
    )
    if task.status == TaskStatus.approved.value:
        await promote_if_due(session, task, now=now)
    return task


def is_due(task: GenerationTask, now: datetime) -> bool:
    return task.scheduled_for is None or task.scheduled_for <= now


async def promote_if_due(
    session: AsyncSession, task: GenerationTask, *, now: datetime | None = None,
) -> bool:
    """Approved -> Scheduled once scheduled_for is null or past.

    Fills in a default expiry window when the target resolves to a non-Server
    node and none was set, so the task never leaves Scheduled without one.
    """
    now = now or utcnow()
    if task.status != TaskStatus.approved.value or not is_due(task, now):
        return False

    values: dict[str, Any] = {}
    if task.expires_at is None and await resolve_target_is_non_server(session, task.target_node_location):
        hours = task.expiry_hours if task.expiry_hours is not None else get_settings().default_expiry_hours
        values = {"expires_at": now + timedelta(hours=hours), "expiry_hours": hours}

    await transition(session, task, TaskStatus.scheduled, actor="monitor", reason="schedule due", values=values)
    return True


async def approve_task(
    session: AsyncSession, task_id: int, *, reason: str | None = None, now: datetime | None = None,
) -> GenerationTask:
    """Human approval. Final: does not re-enter the gate, ignores budget."""
    task = await get_task(session, task_id)
    await transition(
        session, task, TaskStatus.approved,
        actor="user",
        reason=reason or "manual approval",
        values={"approval_reason": reason or "manual approval"},
    )
    await promote_if_due(session, task, now=now)
    return task


async def reject_task(
    session: AsyncSession, task_id: int, *, reason: str | None = None,
) -> GenerationTask:
    task = await get_task(session, task_id)
    return await transition(
        session, task, TaskStatus.rejected,
        actor="user",
        reason=reason or "manual rejection",
        values={"approval_reason": reason or "manual rejection"},
    )


async def edit_task(
    session: AsyncSession, task_id: int, changes: dict[str, Any], *, now: datetime | None = None,
) -> GenerationTask:
    """Edit a task while it is Pending, Scheduled or Rejected.

    The write is a CAS on the current status, so an edit never races a claim.
    A Scheduled task already passed the gate; changing its cost or account
    re-runs the gate and is refused unless it would still be auto-approved.
    """
    now = now or utcnow()
    task = await get_task(session, task_id)
    if task.status not in EDITABLE_STATUSES:
        raise TaskNotEditable(f"Task {task_id} is {task.status}; editable only while Pending/Scheduled/Rejected")

    values = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
    account = await get_account(session, values.get("account_id", task.account_id))

    gated = {k for k in GATED_FIELDS if k in values and values[k] != getattr(task, k)}
    if gated and task.status == TaskStatus.scheduled.value:
        decision = await approval_gate.evaluate_edit(
            session, task, account, values.get("estimated_cost", task.estimated_cost), now,
        )
        if decision.target_status != TaskStatus.approved:
            raise TaskNotEditable(
                f"Task {task_id} is Scheduled; editing {sorted(gated)} would need approval ({decision.reason})"
            )

    if {"target_node_location", "scheduled_for", "expiry_hours"} & values.keys():
        values.update(await _expiry_fields(
            session,
            values.get("target_node_location", task.target_node_location),
            values.get("scheduled_for", task.scheduled_for),
            values.get("expiry_hours", task.expiry_hours),
            now,
        ))

    current = task.status
    if not await compare_and_set(session, task.id, current, current, values):
        await end_noop(session)
        raise TaskNotEditable(f"Task {task_id} changed state while editing")

    record_event(
        session, task.id, current, current,
        actor="user", reason="edited", payload={"fields": sorted(values)},
    )
    await session.commit()
    await session.refresh(task)
    logger.info(f"[tasks] Task {task_id} edited: {sorted(values)}")
    return task


async def list_tasks(
    session: AsyncSession,
    *,
    status: str | None = None,
    account_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[GenerationTask]:
    stmt = select(GenerationTask).order_by(GenerationTask.created_at.desc(), GenerationTask.id.desc())
    if status:
        stmt = stmt.where(GenerationTask.status == status)
    if account_id:
        stmt = stmt.where(GenerationTask.account_id == account_id)
    res = await session.execute(stmt.offset(offset).limit(limit))
    return list(res.scalars().all())
