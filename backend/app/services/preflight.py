"""
Preflight checks: database reachability and the Celery broker.

Results are cached for 60 seconds so health polling does not hammer Redis.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.settings import get_settings

logger = logging.getLogger(__name__)

_cache: dict[str, Any] = {}
_cache_ts: float = 0.0
CACHE_TTL = 60  # seconds


async def _check_db(session: AsyncSession) -> dict:
    try:
        await session.execute(text("SELECT 1"))
        return {"check": "db", "ok": True, "detail": session.bind.dialect.name}
    except Exception as e:
        return {"check": "db", "ok": False, "detail": str(e)[:200]}


async def _check_redis() -> dict:
    """Ping the broker; only required when passes are enqueued on Celery."""
    settings = get_settings()
    if not settings.celery_enabled:
        return {"check": "redis", "ok": True, "detail": "skipped (celery disabled)"}
    try:
        import redis.asyncio as aioredis
        r = aioredis.from_url(settings.redis_url, decode_responses=True)
        pong = await r.ping()
        await r.aclose()
        return {"check": "redis", "ok": bool(pong), "detail": "pong" if pong else "no pong"}
    except Exception as e:
        return {"check": "redis", "ok": False, "detail": str(e)[:200]}


async def run_preflight(session: AsyncSession, *, use_cache: bool = True) -> dict[str, Any]:
    global _cache, _cache_ts

    now = time.monotonic()
    if use_cache and _cache and (now - _cache_ts) < CACHE_TTL:
        return _cache

    checks = [await _check_db(session), await _check_redis()]
    all_ok = all(c["ok"] for c in checks)
    result = {"ok": all_ok, "checks": checks, "cached_at": time.time()}

    _cache = result
    _cache_ts = now

    if not all_ok:
        logger.warning(f"[preflight] FAILED checks: {[c for c in checks if not c['ok']]}")
    return result
