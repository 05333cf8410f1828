"""
Variant & takedown manager.

Repost clones a Published, non-variant task onto other accounts for A/B
testing. Lineage is one level deep: a variant can never be reposted.
Every variant is a fresh task that goes through the approval gate on its
own. The source is the control group ("A"); variants are labelled B, C, …
unless the caller passes a label.

Takedown is Published -> Takedown Pending (user), then the publishing
adapter reports back:
- success: Takedown Complete, takedown_status = Complete
- failure: back to Published, takedown_status cleared (request is logged,
  never silently dropped)
"""
from __future__ import annotations

import logging
import string
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import GenerationTask, TakedownStatus, TaskStatus, utcnow
from app.services.errors import InvalidLineage, InvalidTransition
from app.services.task_service import create_tasks, get_account
from app.services.task_state import get_task, transition

logger = logging.getLogger(__name__)

CONTROL_GROUP = "A"


async def list_variants(session: AsyncSession, source_task_id: int) -> list[GenerationTask]:
    res = await session.execute(
        select(GenerationTask)
        .where(GenerationTask.variant_of_task_id == source_task_id)
        .order_by(GenerationTask.id)
    )
    return list(res.scalars().all())


def next_group_labels(existing: list[str | None], count: int) -> list[str]:
    """Next `count` letters after the highest single-letter label in use (B if none)."""
    used = [g for g in existing if g and len(g) == 1 and g in string.ascii_uppercase]
    start = max((string.ascii_uppercase.index(g) for g in used), default=0) + 1
    labels = []
    for i in range(count):
        idx = start + i
        # Past Z fall back to numbered labels
        labels.append(string.ascii_uppercase[idx] if idx < 26 else f"V{idx + 1}")
    return labels


async def repost(
    session: AsyncSession,
    source_task_id: int,
    target_account_ids: list[int],
    *,
    ab_test_group: str | None = None,
    now: datetime | None = None,
) -> list[GenerationTask]:
    """Create one gated variant per target account.

    Raises:
        NotFound: unknown source or account
        InvalidLineage: the source is itself a variant
        InvalidTransition: the source is not Published
    """
    source = await get_task(session, source_task_id)
    if source.variant_of_task_id is not None:
        raise InvalidLineage(
            f"Task {source.id} is a variant of task {source.variant_of_task_id}; repost the original instead"
        )
    if source.status != TaskStatus.published.value:
        raise InvalidTransition(source.id, source.status, TaskStatus.pending.value, "only Published tasks can be reposted")

    # All targets must exist before the first variant is committed
    for account_id in target_account_ids:
        await get_account(session, account_id)

    if ab_test_group:
        labels = [ab_test_group] * len(target_account_ids)
    else:
        existing = [v.ab_test_group for v in await list_variants(session, source.id)]
        labels = next_group_labels(existing + [source.ab_test_group or CONTROL_GROUP], len(target_account_ids))

    created: list[GenerationTask] = []
    for account_id, label in zip(target_account_ids, labels):
        created.extend(await create_tasks(
            session,
            prompt=source.prompt,
            account_ids=[account_id],
            target_node_location=source.target_node_location,
            expiry_hours=source.expiry_hours,
            estimated_cost=source.estimated_cost,
            ab_test_group=label,
            variant_of_task_id=source.id,
            actor="variant_manager",
            now=now,
        ))

    logger.info(
        f"[variants] Reposted task {source.id} to accounts {target_account_ids} "
        f"as {[t.id for t in created]} groups={labels}"
    )
    return created


async def get_ab_test(session: AsyncSession, source_task_id: int) -> dict[str, Any]:
    """Source (control) plus its variants with their labels and outcomes."""
    source = await get_task(session, source_task_id)
    if source.variant_of_task_id is not None:
        source = await get_task(session, source.variant_of_task_id)
    variants = await list_variants(session, source.id)

    def _row(task: GenerationTask, group: str | None) -> dict[str, Any]:
        return {
            "task_id": task.id,
            "account_id": task.account_id,
            "group": group,
            "status": task.status,
            "video_url": task.video_url,
            "published_at": task.published_at.isoformat() if task.published_at else None,
        }

    return {
        "source_task_id": source.id,
        "control": _row(source, source.ab_test_group or CONTROL_GROUP),
        "variants": [_row(v, v.ab_test_group) for v in variants],
    }


async def initiate_takedown(
    session: AsyncSession, task_id: int, *, reason: str | None = None,
) -> GenerationTask:
    task = await get_task(session, task_id)
    await transition(
        session, task, TaskStatus.takedown_pending,
        actor="user",
        reason=reason or "takedown requested",
        values={"takedown_status": TakedownStatus.pending.value},
    )
    logger.info(f"[variants] Takedown requested for task {task.id}")
    return task


async def report_takedown(
    session: AsyncSession,
    task_id: int,
    *,
    success: bool,
    error: str | None = None,
    now: datetime | None = None,
) -> GenerationTask:
    """Publishing adapter's verdict on a pending takedown."""
    now = now or utcnow()
    task = await get_task(session, task_id)
    if success:
        await transition(
            session, task, TaskStatus.takedown_complete,
            actor="publisher",
            reason="takedown complete",
            values={"takedown_status": TakedownStatus.complete.value},
            payload={"completed_at": now.isoformat()},
        )
        logger.info(f"[variants] Takedown complete for task {task.id}")
        return task

    await transition(
        session, task, TaskStatus.published,
        actor="publisher",
        reason="takedown failed",
        internal=True,
        values={"takedown_status": None, "error_message": error},
        payload={"error": error},
    )
    logger.warning(f"[variants] Takedown failed for task {task.id}, reverted to Published: {error}")
    return task
