"""
Approval gate: autonomy / budget policy for new tasks.

Decision order (first match wins):
1. account not autonomous           -> PENDING_APPROVAL
2. estimated_cost unknown           -> PENDING_APPROVAL
3. spent_today + cost > spend limit -> PENDING_APPROVAL ("budget exceeded")
4. daily_post_limit already reached -> PENDING_APPROVAL
5. cost <= approval_threshold       -> APPROVED  (null threshold counts as 0)
6. otherwise                        -> PENDING_APPROVAL

The gate never auto-rejects: budget pressure only routes a task to a human.
`evaluate()` is pure; callers read spend/post counts first and CAS after.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Account, GenerationTask, TaskStatus, utcnow
from app.services.errors import REASON_BUDGET_EXCEEDED

logger = logging.getLogger(__name__)

# Statuses whose estimated_cost is already committed for the day
COMMITTED_STATUSES = (
    TaskStatus.approved,
    TaskStatus.scheduled,
    TaskStatus.generating,
    TaskStatus.assembling,
    TaskStatus.uploading,
    TaskStatus.published,
)

REASON_NOT_AUTONOMOUS = "account requires manual approval"
REASON_UNKNOWN_COST = "estimated cost unknown"
REASON_POST_LIMIT = "daily post limit reached"
REASON_ABOVE_THRESHOLD = "cost above approval threshold"
REASON_AUTO_APPROVED = "within approval threshold"


class ApprovalOutcome(str, Enum):
    approved = "Approved"
    pending_approval = "PendingApproval"
    rejected = "Rejected"


@dataclass(frozen=True)
class ApprovalDecision:
    outcome: ApprovalOutcome
    reason: str

    @property
    def target_status(self) -> TaskStatus:
        return {
            ApprovalOutcome.approved: TaskStatus.approved,
            ApprovalOutcome.pending_approval: TaskStatus.pending_approval,
            ApprovalOutcome.rejected: TaskStatus.rejected,
        }[self.outcome]


def _money(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def evaluate(
    task: GenerationTask,
    account: Account,
    spent_today,
    posts_today: int = 0,
) -> ApprovalDecision:
    return evaluate_cost(task.estimated_cost, account, spent_today, posts_today)


def evaluate_cost(
    estimated_cost,
    account: Account,
    spent_today,
    posts_today: int = 0,
) -> ApprovalDecision:
    if not account.is_autonomous:
        return ApprovalDecision(ApprovalOutcome.pending_approval, REASON_NOT_AUTONOMOUS)

    if estimated_cost is None:
        return ApprovalDecision(ApprovalOutcome.pending_approval, REASON_UNKNOWN_COST)

    cost = _money(estimated_cost)

    if account.daily_spend_limit is not None:
        if _money(spent_today) + cost > _money(account.daily_spend_limit):
            return ApprovalDecision(ApprovalOutcome.pending_approval, REASON_BUDGET_EXCEEDED)

    if account.daily_post_limit is not None and posts_today >= account.daily_post_limit:
        return ApprovalDecision(ApprovalOutcome.pending_approval, REASON_POST_LIMIT)

    threshold = _money(account.approval_threshold) if account.approval_threshold is not None else Decimal("0")
    if cost <= threshold:
        return ApprovalDecision(ApprovalOutcome.approved, REASON_AUTO_APPROVED)

    return ApprovalDecision(ApprovalOutcome.pending_approval, REASON_ABOVE_THRESHOLD)


def utc_day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


async def committed_today(
    session: AsyncSession,
    account_id: int,
    now: datetime | None = None,
    *,
    exclude_task_id: int | None = None,
) -> tuple[Decimal, int]:
    """Return (spent_today, posts_today) for the account's committed tasks in the current UTC day.

    Recomputed on every call; there is no running counter to drift.
    exclude_task_id leaves out a task that is being re-evaluated.
    """
    now = now or utcnow()
    day_start, day_end = utc_day_bounds(now)
    stmt = (
        select(func.coalesce(func.sum(GenerationTask.estimated_cost), 0), func.count(GenerationTask.id))
        .where(and_(
            GenerationTask.account_id == account_id,
            GenerationTask.status.in_([s.value for s in COMMITTED_STATUSES]),
            GenerationTask.created_at >= day_start,
            GenerationTask.created_at < day_end,
        ))
    )
    if exclude_task_id is not None:
        stmt = stmt.where(GenerationTask.id != exclude_task_id)
    res = await session.execute(stmt)
    spent, count = res.one()
    return _money(spent or 0), int(count or 0)


async def evaluate_for_task(
    session: AsyncSession, task: GenerationTask, account: Account, now: datetime | None = None,
) -> ApprovalDecision:
    spent, posts = await committed_today(session, account.id, now)
    decision = evaluate(task, account, spent, posts)
    logger.info(
        f"[gate] Task {task.id} account={account.id} cost={task.estimated_cost} "
        f"spent_today={spent} -> {decision.outcome.value} ({decision.reason})"
    )
    return decision


async def evaluate_edit(
    session: AsyncSession,
    task: GenerationTask,
    account: Account,
    estimated_cost,
    now: datetime | None = None,
) -> ApprovalDecision:
    """Re-run the gate for an already committed task with edited cost or account."""
    spent, posts = await committed_today(session, account.id, now, exclude_task_id=task.id)
    decision = evaluate_cost(estimated_cost, account, spent, posts)
    logger.info(
        f"[gate] Task {task.id} edit: account={account.id} cost={estimated_cost} "
        f"spent_today={spent} -> {decision.outcome.value} ({decision.reason})"
    )
    return decision
