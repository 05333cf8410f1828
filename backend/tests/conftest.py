"""Shared test fixtures for the orchestration backend.

Every test gets its own file-backed SQLite database (aiosqlite), so
concurrent-claim tests run on genuinely separate connections. The
scheduler and Celery are disabled before the app modules are imported.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CELERY_ENABLED"] = "false"

from collections.abc import AsyncIterator, Awaitable, Callable  # noqa: E402
from datetime import datetime  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.db import Base, get_session  # noqa: E402
from app.models import (  # noqa: E402
    Account,
    ExecutionNode,
    GenerationTask,
    NodeType,
    TaskStatus,
    utcnow,
)
from app.services.node_registry import record_heartbeat, register_node  # noqa: E402

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def session(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    async with session_factory() as s:
        yield s


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_account(session: AsyncSession) -> Callable[..., Awaitable[Account]]:
    """Autonomous account with threshold 5 and daily limit 30 unless overridden."""
    counter = {"n": 0}

    async def _make(**overrides: Any) -> Account:
        counter["n"] += 1
        data: dict[str, Any] = {
            "username": f"matrix_{counter['n']:02d}",
            "platform": "tiktok",
            "is_autonomous": True,
            "approval_threshold": Decimal("5"),
            "daily_spend_limit": Decimal("30"),
        }
        data.update(overrides)
        account = Account(**data)
        session.add(account)
        await session.commit()
        await session.refresh(account)
        return account

    return _make


@pytest.fixture()
def make_node(session: AsyncSession) -> Callable[..., Awaitable[ExecutionNode]]:
    async def _make(
        *,
        name: str = "server-1",
        node_type: NodeType = NodeType.server,
        location: str = "dc-msk",
        online: bool = True,
        heartbeat_at: datetime | None = None,
    ) -> ExecutionNode:
        node = await register_node(session, name=name, node_type=node_type.value, location=location)
        if online or heartbeat_at is not None:
            node = await record_heartbeat(session, node.id, heartbeat_at or utcnow())
        return node

    return _make


@pytest.fixture()
def make_task(session: AsyncSession) -> Callable[..., Awaitable[GenerationTask]]:
    """Insert a task directly in a given status, bypassing the gate."""

    async def _make(account: Account, **fields: Any) -> GenerationTask:
        data: dict[str, Any] = {
            "account_id": account.id,
            "prompt": "10 facts about capybaras",
            "status": TaskStatus.scheduled.value,
            "estimated_cost": Decimal("1"),
        }
        data.update(fields)
        if isinstance(data["status"], TaskStatus):
            data["status"] = data["status"].value
        task = GenerationTask(**data)
        session.add(task)
        await session.commit()
        await session.refresh(task)
        return task

    return _make


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture()
async def client(session_factory: async_sessionmaker) -> AsyncIterator[httpx.AsyncClient]:
    """httpx client against the ASGI app with get_session bound to the test database."""
    from app.main import app

    async def _override_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
