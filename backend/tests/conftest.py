import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from pixguard.infra import postgres
from pixguard.main import app
from pixguard.moderation.domain import container
from pixguard.moderation.workers.timers import ManualTimer
from pixguard.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from pixguard.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings(tmp_path):
	original_token = settings.admin_token
	original_upload_dir = settings.upload_dir
	settings.admin_token = "test-admin-token"
	settings.upload_dir = str(tmp_path / "uploads")
	try:
		yield
	finally:
		settings.admin_token = original_token
		settings.upload_dir = original_upload_dir


@pytest.fixture(autouse=True)
def moderation_container(force_test_settings):
	container.reset()
	container.configure(timer=ManualTimer())
	try:
		yield
	finally:
		container.get_processor().stop()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def admin_headers():
	return {"X-Admin-Token": "test-admin-token"}
