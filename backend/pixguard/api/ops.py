"""Operations endpoints providing health checks, metrics, and the admin guard."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pixguard.infra import postgres
from pixguard.infra.redis import redis_client
from pixguard.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["ops"])


def _resolve_token(x_admin_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
	if x_admin_token:
		return x_admin_token
	if authorization and authorization.lower().startswith("bearer "):
		return authorization.split(" ", 1)[1]
	return None


async def require_admin(
	X_Admin_Token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
	token = settings.admin_token
	if not token:
		# no token configured means no admin access
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="admin_token_not_configured")
	provided = _resolve_token(X_Admin_Token, authorization)
	if provided != token:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="forbidden")


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks: dict[str, bool] = {}
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=0.2)
		checks["redis"] = True
	except Exception:
		logger.warning("Redis readiness check failed", exc_info=True)
		checks["redis"] = False
	try:
		pool = await postgres.get_pool()
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=0.3)
		checks["postgres"] = True
	except Exception:
		logger.warning("Postgres readiness check failed", exc_info=True)
		checks["postgres"] = False
	status_code = status.HTTP_200_OK if all(checks.values()) else status.HTTP_503_SERVICE_UNAVAILABLE
	return JSONResponse(content={"status": "ok" if status_code == 200 else "degraded", "checks": checks}, status_code=status_code)


@router.get("/metrics")
async def prometheus_metrics(_: None = Depends(require_admin)) -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
