"""ASGI application: admin surface for the moderation queue plus ops endpoints."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from pixguard import obs
from pixguard.api import ops
from pixguard.api.errors import install_error_handlers
from pixguard.infra import postgres
from pixguard.infra.redis import redis_client
from pixguard.moderation import configure_postgres, get_processor, router as moderation_router, shutdown as shutdown_moderation
from pixguard.obs.middleware import install as install_observability
from pixguard.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	obs.init()
	pool = await postgres.init_pool()
	http = httpx.AsyncClient(timeout=settings.screening_provider_timeout_seconds)
	await configure_postgres(pool, redis_client, http=http)
	if settings.moderation_workers_enabled:
		get_processor().start()
	else:
		logger.info("moderation workers disabled; queue processor not started")
	try:
		yield
	finally:
		await shutdown_moderation()
		await http.aclose()
		await postgres.close_pool()


app = FastAPI(title="pixguard", lifespan=lifespan)
install_error_handlers(app)
install_observability(app)

app.include_router(ops.router, tags=["ops"])
app.include_router(moderation_router)
