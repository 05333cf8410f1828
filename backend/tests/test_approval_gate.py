"""Tests for services/approval_gate.py -- autonomy and budget policy."""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.models import TaskStatus, utcnow
from app.services.approval_gate import (
    REASON_ABOVE_THRESHOLD,
    REASON_AUTO_APPROVED,
    REASON_NOT_AUTONOMOUS,
    REASON_POST_LIMIT,
    REASON_UNKNOWN_COST,
    ApprovalOutcome,
    committed_today,
    evaluate,
)
from app.services.assignment_monitor import run_assignment_pass
from app.services.errors import REASON_BUDGET_EXCEEDED, TaskNotEditable
from app.services.task_service import approve_task, create_tasks, edit_task
from app.services.task_state import get_task


def _account(**overrides):
    data = {
        "id": 1,
        "is_autonomous": True,
        "approval_threshold": Decimal("5"),
        "daily_spend_limit": Decimal("30"),
        "daily_post_limit": None,
    }
    data.update(overrides)
    return SimpleNamespace(**data)


def _task(cost):
    return SimpleNamespace(id=1, estimated_cost=None if cost is None else Decimal(cost))


# =========================================================================
# evaluate() -- pure decision
# =========================================================================


class TestEvaluate:
    def test_cost_under_threshold_auto_approves(self) -> None:
        decision = evaluate(_task("3"), _account(), Decimal("0"))
        assert decision.outcome == ApprovalOutcome.approved
        assert decision.reason == REASON_AUTO_APPROVED
        assert decision.target_status == TaskStatus.approved

    def test_cost_equal_to_threshold_auto_approves(self) -> None:
        assert evaluate(_task("5"), _account(), Decimal("0")).outcome == ApprovalOutcome.approved

    def test_cost_over_threshold_needs_human(self) -> None:
        decision = evaluate(_task("7"), _account(), Decimal("0"))
        assert decision.outcome == ApprovalOutcome.pending_approval
        assert decision.reason == REASON_ABOVE_THRESHOLD
        assert decision.target_status == TaskStatus.pending_approval

    def test_non_autonomous_always_needs_human(self) -> None:
        decision = evaluate(_task("0"), _account(is_autonomous=False), Decimal("0"))
        assert decision.outcome == ApprovalOutcome.pending_approval
        assert decision.reason == REASON_NOT_AUTONOMOUS

    def test_unknown_cost_needs_human(self) -> None:
        decision = evaluate(_task(None), _account(), Decimal("0"))
        assert decision.outcome == ApprovalOutcome.pending_approval
        assert decision.reason == REASON_UNKNOWN_COST

    def test_budget_exceeded_routes_to_human(self) -> None:
        decision = evaluate(_task("5"), _account(), Decimal("28"))
        assert decision.outcome == ApprovalOutcome.pending_approval
        assert decision.reason == REASON_BUDGET_EXCEEDED

    def test_budget_exactly_reached_still_approves(self) -> None:
        assert evaluate(_task("2"), _account(), Decimal("28")).outcome == ApprovalOutcome.approved

    def test_no_spend_limit(self) -> None:
        decision = evaluate(_task("1"), _account(daily_spend_limit=None), Decimal("10000"))
        assert decision.outcome == ApprovalOutcome.approved

    def test_null_threshold_counts_as_zero(self) -> None:
        account = _account(approval_threshold=None)
        assert evaluate(_task("0"), account, Decimal("0")).outcome == ApprovalOutcome.approved
        assert evaluate(_task("0.01"), account, Decimal("0")).outcome == ApprovalOutcome.pending_approval

    def test_post_limit_reached(self) -> None:
        decision = evaluate(_task("1"), _account(daily_post_limit=3), Decimal("0"), posts_today=3)
        assert decision.outcome == ApprovalOutcome.pending_approval
        assert decision.reason == REASON_POST_LIMIT

    def test_gate_never_rejects(self) -> None:
        for cost in ("0", "3", "7", "1000"):
            for spent in ("0", "29", "500"):
                decision = evaluate(_task(cost), _account(), Decimal(spent), posts_today=99)
                assert decision.outcome != ApprovalOutcome.rejected


# =========================================================================
# committed_today() + gate on creation
# =========================================================================


class TestCommittedSpend:
    async def test_counts_only_committed_statuses_today(self, session, make_account, make_task) -> None:
        account = await make_account()
        now = utcnow()
        await make_task(account, status=TaskStatus.approved, estimated_cost=Decimal("10"), created_at=now)
        await make_task(account, status=TaskStatus.published, estimated_cost=Decimal("8"), created_at=now)
        await make_task(account, status=TaskStatus.pending_approval, estimated_cost=Decimal("50"), created_at=now)
        await make_task(account, status=TaskStatus.rejected, estimated_cost=Decimal("50"), created_at=now)
        await make_task(
            account, status=TaskStatus.published, estimated_cost=Decimal("50"), created_at=now - timedelta(days=1),
        )

        spent, posts = await committed_today(session, account.id, now)

        assert spent == Decimal("18")
        assert posts == 2

    async def test_budget_exceeded_on_creation(self, session, make_account, make_task) -> None:
        account = await make_account()
        now = utcnow()
        await make_task(account, status=TaskStatus.scheduled, estimated_cost=Decimal("28"), created_at=now)

        [task] = await create_tasks(
            session, prompt="retro gaming top 5", account_ids=[account.id], estimated_cost=Decimal("5"), now=now,
        )

        assert task.status == TaskStatus.pending_approval.value
        assert task.approval_reason == REASON_BUDGET_EXCEEDED

    async def test_cheap_task_auto_approved_and_scheduled(self, session, make_account) -> None:
        account = await make_account()

        [task] = await create_tasks(
            session, prompt="city timelapse", account_ids=[account.id], estimated_cost=Decimal("3"),
        )

        assert task.status == TaskStatus.scheduled.value
        assert task.approval_reason == REASON_AUTO_APPROVED

    async def test_future_schedule_stays_approved(self, session, make_account) -> None:
        account = await make_account()

        [task] = await create_tasks(
            session,
            prompt="city timelapse",
            account_ids=[account.id],
            estimated_cost=Decimal("3"),
            scheduled_for=utcnow() + timedelta(hours=6),
        )

        assert task.status == TaskStatus.approved.value

    async def test_non_autonomous_needs_human_then_approved(self, session, make_account) -> None:
        account = await make_account(is_autonomous=False)

        [task] = await create_tasks(
            session, prompt="unboxing", account_ids=[account.id], estimated_cost=Decimal("0"),
        )
        assert task.status == TaskStatus.pending_approval.value

        await approve_task(session, task.id, reason="looks fine")
        assert task.status == TaskStatus.scheduled.value

    async def test_each_account_gated_independently(self, session, make_account) -> None:
        cheap = await make_account(approval_threshold=Decimal("10"))
        strict = await make_account(approval_threshold=Decimal("1"))

        tasks = await create_tasks(
            session, prompt="cooking hack", account_ids=[cheap.id, strict.id], estimated_cost=Decimal("4"),
        )

        assert [t.status for t in tasks] == [TaskStatus.scheduled.value, TaskStatus.pending_approval.value]

    @pytest.mark.parametrize("cost,expected", [("3", TaskStatus.scheduled), ("7", TaskStatus.pending_approval)])
    async def test_threshold_five(self, session, make_account, cost, expected) -> None:
        account = await make_account(approval_threshold=Decimal("5"))
        [task] = await create_tasks(
            session, prompt="daily horoscope", account_ids=[account.id], estimated_cost=Decimal(cost),
        )
        assert task.status == expected.value


# =========================================================================
# Edits to an already gated task
# =========================================================================


class TestEditRegate:
    async def test_cost_raised_past_threshold_refused(self, session, make_account, make_node) -> None:
        account = await make_account()
        await make_node()
        [task] = await create_tasks(
            session, prompt="desk setup tour", account_ids=[account.id], estimated_cost=Decimal("3"),
        )
        assert task.status == TaskStatus.scheduled.value

        with pytest.raises(TaskNotEditable):
            await edit_task(session, task.id, {"estimated_cost": Decimal("500")})

        result = await run_assignment_pass(session)
        task = await get_task(session, task.id)
        assert task.estimated_cost == Decimal("3")
        assert [a["task_id"] for a in result["assigned"]] == [task.id]

    async def test_move_to_non_autonomous_account_refused(self, session, make_account) -> None:
        account = await make_account()
        manual = await make_account(is_autonomous=False)
        [task] = await create_tasks(
            session, prompt="desk setup tour", account_ids=[account.id], estimated_cost=Decimal("3"),
        )

        with pytest.raises(TaskNotEditable):
            await edit_task(session, task.id, {"account_id": manual.id})

        assert (await get_task(session, task.id)).account_id == account.id

    async def test_cost_change_within_policy_allowed(self, session, make_account) -> None:
        account = await make_account()
        [task] = await create_tasks(
            session, prompt="desk setup tour", account_ids=[account.id], estimated_cost=Decimal("3"),
        )

        # The task's own 3 is not counted against the new cost of 5
        task = await edit_task(session, task.id, {"estimated_cost": Decimal("5")})

        assert task.status == TaskStatus.scheduled.value
        assert task.estimated_cost == Decimal("5")
