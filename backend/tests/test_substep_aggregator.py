"""Tests for services/substep_aggregator.py -- progress reports drive the phases."""

from datetime import timedelta

import pytest

from app.models import SubStepStatus, TaskStatus, utcnow
from app.services.assignment_monitor import claim_task
from app.services.errors import ClaimConflict, InvalidTransition
from app.services.expiry_monitor import run_expiry_sweep
from app.services.substep_aggregator import (
    derive_status,
    list_sub_steps,
    report_failure,
    report_published,
    report_sub_step,
)
from app.services.task_state import get_task


@pytest.fixture()
async def claimed(session, make_account, make_task, make_node):
    """A task claimed by an online server node."""
    account = await make_account()
    node = await make_node()
    task = await make_task(account)
    await claim_task(session, task.id, node.id)
    return task, node


# =========================================================================
# Phase advancement
# =========================================================================


class TestPhases:
    async def test_all_generating_steps_completed_advances(self, session, claimed) -> None:
        task, node = claimed

        await report_sub_step(session, task.id, "script", "Pending", node_id=node.id)
        await report_sub_step(session, task.id, "voiceover", "Pending", node_id=node.id)
        await report_sub_step(session, task.id, "script", "Completed", node_id=node.id)
        task = await report_sub_step(session, task.id, "voiceover", "Completed", node_id=node.id)

        assert task.status == TaskStatus.assembling.value

    async def test_partial_completion_stays(self, session, claimed) -> None:
        task, node = claimed

        await report_sub_step(session, task.id, "script", "In Progress", node_id=node.id)
        await report_sub_step(session, task.id, "voiceover", "In Progress", node_id=node.id)
        task = await report_sub_step(session, task.id, "script", "Completed", node_id=node.id)
        assert task.status == TaskStatus.generating.value

        task = await report_sub_step(session, task.id, "voiceover", "Completed", node_id=node.id)
        assert task.status == TaskStatus.assembling.value

        task = await report_sub_step(session, task.id, "render", "Completed", node_id=node.id)
        assert task.status == TaskStatus.uploading.value

        task = await report_sub_step(session, task.id, "upload", "Completed", node_id=node.id)
        assert task.status == TaskStatus.uploading.value

        task = await report_published(
            session, task.id, video_url="https://youtube.example/shorts/abc", node_id=node.id,
        )
        assert task.status == TaskStatus.published.value
        assert task.video_url == "https://youtube.example/shorts/abc"
        assert task.published_at is not None

    async def test_failed_step_fails_task(self, session, claimed) -> None:
        task, node = claimed

        await report_sub_step(session, task.id, "script", "Completed", node_id=node.id)
        task = await report_sub_step(
            session, task.id, "render", "Failed", node_id=node.id, details={"error": "ffmpeg exited 1"},
        )

        assert task.status == TaskStatus.failed.value
        assert task.error_message == "ffmpeg exited 1"

    async def test_updates_open_step_in_place(self, session, claimed) -> None:
        task, node = claimed

        await report_sub_step(session, task.id, "script", "Pending", node_id=node.id)
        await report_sub_step(
            session, task.id, "script", "In Progress", node_id=node.id, details={"model": "gpt"},
        )

        steps = await list_sub_steps(session, task.id)
        assert len(steps) == 1
        assert steps[0].status == SubStepStatus.in_progress.value
        assert steps[0].phase == TaskStatus.generating.value
        assert steps[0].attempt == 1
        assert steps[0].details == {"model": "gpt"}
        assert steps[0].started_at is not None


# =========================================================================
# Refusals
# =========================================================================


class TestRefusals:
    async def test_non_holder_rejected(self, session, claimed, make_node) -> None:
        task, _ = claimed
        intruder = await make_node(name="server-2")

        with pytest.raises(ClaimConflict):
            await report_sub_step(session, task.id, "script", "Completed", node_id=intruder.id)
        assert await list_sub_steps(session, task.id) == []

    async def test_report_outside_execution(self, session, make_account, make_task) -> None:
        account = await make_account()
        task = await make_task(account)

        with pytest.raises(InvalidTransition):
            await report_sub_step(session, task.id, "script", "In Progress")

    async def test_publish_before_uploading(self, session, claimed) -> None:
        task, node = claimed

        with pytest.raises(InvalidTransition):
            await report_published(session, task.id, video_url="https://x.example/1", node_id=node.id)

    async def test_node_reported_failure(self, session, claimed) -> None:
        task, node = claimed

        task = await report_failure(session, task.id, error="gpu out of memory", node_id=node.id)

        assert task.status == TaskStatus.failed.value
        assert task.error_message == "gpu out of memory"


# =========================================================================
# Attempts
# =========================================================================


class TestAttempts:
    async def test_reclaimed_task_ignores_previous_attempt(self, session, make_account, make_task, make_node) -> None:
        account = await make_account()
        t0 = utcnow()
        crashed = await make_node(name="crashed", heartbeat_at=t0)
        task = await make_task(account)
        await claim_task(session, task.id, crashed.id, now=t0)
        await report_sub_step(session, task.id, "script", "In Progress", node_id=crashed.id, now=t0)

        await run_expiry_sweep(session, now=t0 + timedelta(hours=1))

        healthy = await make_node(name="healthy")
        task = await claim_task(session, task.id, healthy.id)
        assert task.claim_count == 2
        assert await list_sub_steps(session, task.id, current_only=True) == []

        task = await report_sub_step(session, task.id, "script", "Completed", node_id=healthy.id)
        assert task.status == TaskStatus.assembling.value
        assert len(await list_sub_steps(session, task.id)) == 2


# =========================================================================
# Concurrent reports
# =========================================================================


class TestConcurrentReports:
    async def test_failure_survives_parallel_phase_advance(self, session, session_factory, claimed) -> None:
        task, node = claimed

        async with session_factory() as other:
            # The second reporter read the task while it was still Generating
            stale = await get_task(other, task.id)
            await other.commit()
            assert stale.status == TaskStatus.generating.value

            advanced = await report_sub_step(session, task.id, "script", "Completed", node_id=node.id)
            assert advanced.status == TaskStatus.assembling.value

            failed = await report_sub_step(
                other, task.id, "thumbnail", "Failed", node_id=node.id, details={"error": "no frames"},
            )

        assert failed.status == TaskStatus.failed.value
        assert failed.error_message == "no frames"
        await session.refresh(task)
        assert task.status == TaskStatus.failed.value


# =========================================================================
# derive_status() -- pure
# =========================================================================


class _Step:
    def __init__(self, phase: str, status: str) -> None:
        self.phase = phase
        self.status = status


class TestDeriveStatus:
    def test_no_steps_stays(self) -> None:
        assert derive_status(TaskStatus.generating.value, []) is None

    def test_other_phase_steps_ignored(self) -> None:
        steps = [_Step(TaskStatus.generating.value, SubStepStatus.completed.value)]
        assert derive_status(TaskStatus.assembling.value, steps) is None

    def test_uploading_has_no_automatic_next(self) -> None:
        steps = [_Step(TaskStatus.uploading.value, SubStepStatus.completed.value)]
        assert derive_status(TaskStatus.uploading.value, steps) is None
