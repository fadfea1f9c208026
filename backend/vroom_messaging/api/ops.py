"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from vroom_messaging.domain.messaging.connections import connections
from vroom_messaging.infra import postgres
from vroom_messaging.infra.redis import redis_client
from vroom_messaging.settings import settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["ops"])


async def _redis_status(timeout: float = 0.2) -> Dict[str, Any]:
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
		return {"ok": True}
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("Redis readiness check failed", exc_info=True)
		return {"ok": False, "error": str(exc)}


async def _postgres_status(timeout: float = 0.3) -> Dict[str, Any]:
	try:
		pool = await postgres.get_pool()
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
		return {"ok": True}
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("Postgres readiness check failed", exc_info=True)
		return {"ok": False, "error": str(exc)}


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks = {"postgres": await _postgres_status(), "redis": await _redis_status()}
	ready = all(check["ok"] for check in checks.values())
	payload = {"status": "ok" if ready else "degraded", "checks": checks, "live_connections": len(connections)}
	return JSONResponse(content=payload, status_code=200 if ready else 503)


@router.get("/metrics")
async def metrics_endpoint() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
