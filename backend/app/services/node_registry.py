"""
Node registry: execution nodes, heartbeats, and liveness.

`online` is a read-time projection of heartbeat recency; stale nodes are
never mutated or deleted by the engine.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import ExecutionNode, GenerationTask, NodeType, utcnow
from app.services.errors import NodeInUse, NotFound
from app.services.task_state import ACTIVE_STATUSES
from app.settings import get_settings

logger = logging.getLogger(__name__)


def online_window() -> timedelta:
    return timedelta(minutes=get_settings().node_online_window_minutes)


def is_online(node: ExecutionNode, now: datetime | None = None) -> bool:
    if node.last_heartbeat is None:
        return False
    now = now or utcnow()
    return now - node.last_heartbeat <= online_window()


def is_server(node: ExecutionNode) -> bool:
    return node.node_type == NodeType.server.value


async def list_nodes(session: AsyncSession) -> list[ExecutionNode]:
    res = await session.execute(select(ExecutionNode).order_by(ExecutionNode.id))
    return list(res.scalars().all())


async def get_node(session: AsyncSession, node_id: int) -> ExecutionNode:
    node = await session.get(ExecutionNode, node_id)
    if not node:
        raise NotFound(f"Node {node_id} not found")
    return node


async def list_online_nodes(session: AsyncSession, now: datetime | None = None) -> list[ExecutionNode]:
    now = now or utcnow()
    cutoff = now - online_window()
    res = await session.execute(
        select(ExecutionNode)
        .where(ExecutionNode.last_heartbeat.isnot(None), ExecutionNode.last_heartbeat >= cutoff)
        .order_by(ExecutionNode.id)
    )
    return list(res.scalars().all())


async def record_heartbeat(
    session: AsyncSession, node_id: int, timestamp: datetime | None = None,
) -> ExecutionNode:
    """Store the heartbeat pushed by a node process. Unknown ids raise NotFound."""
    node = await get_node(session, node_id)
    node.last_heartbeat = timestamp or utcnow()
    session.add(node)
    await session.commit()
    await session.refresh(node)
    logger.debug(f"[nodes] Heartbeat node {node_id} at {node.last_heartbeat.isoformat()}")
    return node


async def register_node(
    session: AsyncSession, *, name: str, node_type: str, location: str,
) -> ExecutionNode:
    node = ExecutionNode(name=name, node_type=NodeType(node_type).value, location=location)
    session.add(node)
    await session.commit()
    await session.refresh(node)
    logger.info(f"[nodes] Registered node {node.id} ({node.node_type} @ {node.location})")
    return node


async def update_node(session: AsyncSession, node_id: int, **fields: Any) -> ExecutionNode:
    node = await get_node(session, node_id)
    if fields.get("node_type") is not None:
        fields["node_type"] = NodeType(fields["node_type"]).value
    for key in ("name", "node_type", "location"):
        if fields.get(key) is not None:
            setattr(node, key, fields[key])
    session.add(node)
    await session.commit()
    await session.refresh(node)
    return node


async def count_active_claims(session: AsyncSession, node_id: int) -> int:
    res = await session.execute(
        select(func.count(GenerationTask.id)).where(
            GenerationTask.claimed_by_node_id == node_id,
            GenerationTask.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
    )
    return res.scalar() or 0


async def delete_node(session: AsyncSession, node_id: int) -> None:
    """Delete a node unless it still holds an in-flight claim."""
    node = await get_node(session, node_id)
    active = await count_active_claims(session, node_id)
    if active:
        raise NodeInUse(f"Node {node_id} holds {active} claimed task(s)")
    await session.delete(node)
    await session.commit()
    logger.info(f"[nodes] Deleted node {node_id}")


def location_is_non_server(nodes: Iterable[ExecutionNode], location: str | None) -> bool:
    """A location resolves to non-Server if any node registered there is not a Server."""
    if location is None:
        return False
    return any(n.location == location and not is_server(n) for n in nodes)


async def resolve_target_is_non_server(session: AsyncSession, location: str | None) -> bool:
    if location is None:
        return False
    res = await session.execute(
        select(func.count(ExecutionNode.id)).where(
            ExecutionNode.location == location,
            ExecutionNode.node_type != NodeType.server.value,
        )
    )
    return (res.scalar() or 0) > 0
