import os
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

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("GUILDS_STORAGE_BACKEND", "memory")

from guildhall.guilds.api import guilds as guilds_api
from guildhall.guilds.api import members as members_api
from guildhall.guilds.domain.repo import InMemoryGuildRepository
from guildhall.guilds.domain.services import GuildsService
from guildhall.infra import postgres
from guildhall.main import app
from guildhall.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from guildhall.infra.redis import redis_client, set_redis_client
	original = redis_client._client
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
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via the X-User-Id header, which is only accepted in dev mode.
	"""
	original_env = settings.environment
	original_backend = settings.guilds_storage_backend
	settings.environment = "dev"
	settings.guilds_storage_backend = "memory"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.guilds_storage_backend = original_backend


@pytest.fixture()
def guild_repository() -> InMemoryGuildRepository:
	return InMemoryGuildRepository()


@pytest.fixture()
def live_service(monkeypatch, guild_repository) -> GuildsService:
	"""Route both guild routers to one fresh in-memory store."""
	service = GuildsService(guild_repository)
	monkeypatch.setattr(guilds_api, "_service", service)
	monkeypatch.setattr(members_api, "_service", service)
	return service


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
