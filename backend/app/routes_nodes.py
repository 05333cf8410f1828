"""
Execution node API: registry, heartbeats, claims and progress reports.

Nodes call these endpoints from their own processes:
- POST /{id}/heartbeat every few minutes
- POST /{id}/claim-next to pull work (or the assignment pass pushes it)
- POST /{id}/tasks/{task_id}/sub-steps while executing
- POST /{id}/tasks/{task_id}/published | failed | takedown when done
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_session
from app.models import ExecutionNode, utcnow
from app.schemas import (
    FailureReport,
    HeartbeatRequest,
    NodeCreate,
    NodeRead,
    NodeUpdate,
    PublishReport,
    SubStepReport,
    TakedownReport,
    TaskRead,
)
from app.services import assignment_monitor, node_registry, substep_aggregator, variant_manager

router = APIRouter(prefix="/api/nodes", tags=["nodes"])

SessionDep = Depends(get_session)


async def _node_read(session: AsyncSession, node: ExecutionNode) -> NodeRead:
    read = NodeRead.model_validate(node)
    read.online = node_registry.is_online(node, utcnow())
    read.active_claims = await node_registry.count_active_claims(session, node.id)
    return read


@router.get("", response_model=list[NodeRead])
async def list_nodes(session: AsyncSession = SessionDep):
    nodes = await node_registry.list_nodes(session)
    return [await _node_read(session, n) for n in nodes]


@router.post("", response_model=NodeRead, status_code=status.HTTP_201_CREATED)
async def register_node(payload: NodeCreate, session: AsyncSession = SessionDep):
    node = await node_registry.register_node(
        session, name=payload.name, node_type=payload.node_type.value, location=payload.location,
    )
    return await _node_read(session, node)


@router.get("/{node_id}", response_model=NodeRead)
async def get_node(node_id: int, session: AsyncSession = SessionDep):
    return await _node_read(session, await node_registry.get_node(session, node_id))


@router.patch("/{node_id}", response_model=NodeRead)
async def update_node(node_id: int, payload: NodeUpdate, session: AsyncSession = SessionDep):
    node = await node_registry.update_node(session, node_id, **payload.model_dump(exclude_unset=True))
    return await _node_read(session, node)


@router.delete("/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(node_id: int, session: AsyncSession = SessionDep):
    await node_registry.delete_node(session, node_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{node_id}/heartbeat", response_model=NodeRead)
async def heartbeat(node_id: int, payload: HeartbeatRequest | None = None, session: AsyncSession = SessionDep):
    node = await node_registry.record_heartbeat(session, node_id, payload.timestamp if payload else None)
    return await _node_read(session, node)


@router.get("/{node_id}/tasks", response_model=list[TaskRead])
async def list_node_tasks(node_id: int, session: AsyncSession = SessionDep):
    """Tasks this node currently holds."""
    return await assignment_monitor.list_node_tasks(session, node_id)


@router.post("/{node_id}/claim-next")
async def claim_next(node_id: int, session: AsyncSession = SessionDep):
    """Pull the oldest due task this node may run. `task` is null when there is nothing to do."""
    task = await assignment_monitor.claim_next(session, node_id)
    return {"task": TaskRead.model_validate(task).model_dump(mode="json") if task else None}


@router.post("/{node_id}/tasks/{task_id}/claim", response_model=TaskRead)
async def claim_task(node_id: int, task_id: int, session: AsyncSession = SessionDep):
    return await assignment_monitor.claim_task(session, task_id, node_id)


@router.post("/{node_id}/tasks/{task_id}/sub-steps", response_model=TaskRead)
async def report_sub_step(
    node_id: int, task_id: int, payload: SubStepReport, session: AsyncSession = SessionDep,
):
    return await substep_aggregator.report_sub_step(
        session, task_id, payload.step_name, payload.status.value,
        node_id=node_id, details=payload.details,
    )


@router.post("/{node_id}/tasks/{task_id}/published", response_model=TaskRead)
async def report_published(
    node_id: int, task_id: int, payload: PublishReport, session: AsyncSession = SessionDep,
):
    return await substep_aggregator.report_published(
        session, task_id, video_url=payload.video_url, published_at=payload.published_at, node_id=node_id,
    )


@router.post("/{node_id}/tasks/{task_id}/failed", response_model=TaskRead)
async def report_failure(
    node_id: int, task_id: int, payload: FailureReport, session: AsyncSession = SessionDep,
):
    return await substep_aggregator.report_failure(session, task_id, error=payload.error, node_id=node_id)


@router.post("/{node_id}/tasks/{task_id}/takedown", response_model=TaskRead)
async def report_takedown(
    node_id: int, task_id: int, payload: TakedownReport, session: AsyncSession = SessionDep,
):
    await node_registry.get_node(session, node_id)
    return await variant_manager.report_takedown(
        session, task_id, success=payload.success, error=payload.error,
    )
