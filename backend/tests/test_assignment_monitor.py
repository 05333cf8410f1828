"""Tests for services/assignment_monitor.py -- affinity, claims, assignment pass."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from app.models import GenerationTask, NodeType, TaskStatus, utcnow
from app.services.assignment_monitor import (
    claim_next,
    claim_task,
    is_eligible,
    list_node_tasks,
    run_assignment_pass,
)
from app.services.errors import REASON_NO_ELIGIBLE_NODE, ClaimConflict, NodeNotEligible
from app.services.task_state import get_task


# =========================================================================
# Eligibility
# =========================================================================


class TestEligibility:
    async def test_untargeted_task_needs_server(self, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account)
        server = await make_node()
        phone = await make_node(name="phone-1", node_type=NodeType.mobile_proxy, location="dc-msk")

        assert is_eligible(task, server)
        assert not is_eligible(task, phone)

    async def test_targeted_task_matches_location_any_type(self, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account, target_node_location="home-desk")
        desk = await make_node(name="desk-1", node_type=NodeType.desktop_companion, location="home-desk")
        server_elsewhere = await make_node(name="server-2", location="dc-ams")

        assert is_eligible(task, desk)
        assert not is_eligible(task, server_elsewhere)

    async def test_offline_node_never_eligible(self, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account)
        stale = await make_node(heartbeat_at=utcnow() - timedelta(minutes=30))

        assert not is_eligible(task, stale)


# =========================================================================
# claim_task()
# =========================================================================


class TestClaim:
    async def test_claim_records_holder(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account)
        node = await make_node()

        claimed = await claim_task(session, task.id, node.id)

        assert claimed.status == TaskStatus.generating.value
        assert claimed.claimed_by_node_id == node.id
        assert claimed.claimed_at is not None
        assert claimed.claim_count == 1
        assert [t.id for t in await list_node_tasks(session, node.id)] == [task.id]

    async def test_claim_twice_conflicts(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account)
        first = await make_node()
        second = await make_node(name="server-2")

        await claim_task(session, task.id, first.id)
        with pytest.raises(ClaimConflict):
            await claim_task(session, task.id, second.id)

        refreshed = await get_task(session, task.id)
        assert refreshed.claimed_by_node_id == first.id

    async def test_concurrent_claims_exactly_one_wins(
        self, session_factory, make_account, make_task, make_node,
    ) -> None:
        account = await make_account()
        task = await make_task(account)
        nodes = [await make_node(name=f"server-{i}") for i in range(4)]

        async def _attempt(node_id: int):
            async with session_factory() as s:
                return await claim_task(s, task.id, node_id)

        results = await asyncio.gather(*(_attempt(n.id) for n in nodes), return_exceptions=True)

        winners = [r for r in results if isinstance(r, GenerationTask)]
        losers = [r for r in results if isinstance(r, ClaimConflict)]
        assert len(winners) == 1
        assert len(losers) == len(nodes) - 1

        async with session_factory() as s:
            final = await get_task(s, task.id)
            assert final.status == TaskStatus.generating.value
            assert final.claimed_by_node_id == winners[0].claimed_by_node_id
            assert final.claim_count == 1

    async def test_wrong_location_not_eligible(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account, target_node_location="dc-ams")
        node = await make_node(location="dc-msk")

        with pytest.raises(NodeNotEligible):
            await claim_task(session, task.id, node.id)

    async def test_not_due_yet(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account, scheduled_for=utcnow() + timedelta(hours=2))
        node = await make_node()

        with pytest.raises(NodeNotEligible):
            await claim_task(session, task.id, node.id)

    async def test_non_server_target_without_expiry_refused(
        self, session, make_account, make_task, make_node,
    ) -> None:
        account = await make_account()
        task = await make_task(account, target_node_location="pocket", expires_at=None)
        phone = await make_node(name="phone-1", node_type=NodeType.mobile_proxy, location="pocket")

        with pytest.raises(NodeNotEligible, match="expiry"):
            await claim_task(session, task.id, phone.id)

    async def test_only_scheduled_is_claimable(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account, status=TaskStatus.approved)
        node = await make_node()

        with pytest.raises(ClaimConflict):
            await claim_task(session, task.id, node.id)


# =========================================================================
# claim_next() -- pull model
# =========================================================================


class TestClaimNext:
    async def test_claims_oldest_eligible(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        now = utcnow()
        await make_task(account, target_node_location="dc-ams", created_at=now - timedelta(minutes=30))
        older = await make_task(account, created_at=now - timedelta(minutes=20))
        await make_task(account, created_at=now - timedelta(minutes=10))
        node = await make_node(location="dc-msk")

        claimed = await claim_next(session, node.id, now=now)

        assert claimed is not None
        assert claimed.id == older.id

    async def test_nothing_to_do(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        await make_task(account, target_node_location="elsewhere")
        node = await make_node()

        assert await claim_next(session, node.id) is None

    async def test_offline_node_gets_nothing(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        await make_task(account)
        node = await make_node(online=False)

        assert await claim_next(session, node.id) is None


# =========================================================================
# run_assignment_pass() -- push model
# =========================================================================


class TestAssignmentPass:
    async def test_spreads_to_least_loaded(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        busy = await make_node(name="busy")
        idle = await make_node(name="idle")
        running = await make_task(account)
        await claim_task(session, running.id, busy.id)
        queued = await make_task(account)

        report = await run_assignment_pass(session)

        assert report["assigned"] == [{"task_id": queued.id, "node_id": idle.id}]
        assert report["errors"] == []

    async def test_no_eligible_node_is_waiting_not_error(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account, target_node_location="home-desk", expires_at=utcnow() + timedelta(hours=2))
        await make_node(name="desk-1", node_type=NodeType.desktop_companion, location="home-desk", online=False)

        report = await run_assignment_pass(session)

        assert report["assigned_count"] == 0
        assert report["waiting"][0]["task_id"] == task.id
        assert report["waiting"][0]["reason"] == REASON_NO_ELIGIBLE_NODE
        assert report["errors"] == []
        assert (await get_task(session, task.id)).status == TaskStatus.scheduled.value

    async def test_dry_run_changes_nothing(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        task = await make_task(account)
        await make_node()

        report = await run_assignment_pass(session, dry_run=True)

        assert report["dry_run"] is True
        assert report["assigned_count"] == 1
        assert (await get_task(session, task.id)).status == TaskStatus.scheduled.value

    async def test_promotes_due_approved(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        now = utcnow()
        due = await make_task(account, status=TaskStatus.approved, scheduled_for=now - timedelta(minutes=1))
        later = await make_task(account, status=TaskStatus.approved, scheduled_for=now + timedelta(hours=1))
        node = await make_node()

        report = await run_assignment_pass(session, now=now)

        assert report["promoted"] == [due.id]
        assert report["assigned"] == [{"task_id": due.id, "node_id": node.id}]
        assert (await get_task(session, later.id)).status == TaskStatus.approved.value

    async def test_desktop_task_goes_to_its_desk(self, session, make_account, make_node) -> None:
        from app.services.task_service import create_tasks

        account = await make_account()
        await make_node(name="server-1", location="home-desk-dc")
        desk = await make_node(name="desk-1", node_type=NodeType.desktop_companion, location="home-desk")

        [task] = await create_tasks(
            session,
            prompt="lofi loop",
            account_ids=[account.id],
            target_node_location="home-desk",
            estimated_cost=Decimal("1"),
        )
        assert task.expires_at is not None

        report = await run_assignment_pass(session)

        assert report["assigned"] == [{"task_id": task.id, "node_id": desk.id}]
