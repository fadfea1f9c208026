import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

from vroom_messaging.domain.messaging.connections import connections
from vroom_messaging.domain.messaging.models import UserSummary
from vroom_messaging.domain.messaging.repo import memory_store
from vroom_messaging.infra import postgres
from vroom_messaging.main import app
from vroom_messaging.settings import settings

SEEDED_USERS = (
	UserSummary(id="u1", handle="alice", first_name="Alice", last_name="Buyer"),
	UserSummary(id="u2", handle="bob", first_name="Bob", last_name="Seller"),
	UserSummary(id="u3", handle="carol", first_name="Carol", last_name="Bystander"),
)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from vroom_messaging.infra.redis import redis_client, set_redis_client

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
	postgres.set_pool(None)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via the X-User-Id header, which is only accepted in
	dev mode.
	"""
	original_env = settings.environment
	original_limit = settings.message_send_limit
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.message_send_limit = original_limit


@pytest.fixture(autouse=True)
def messaging_state():
	store = memory_store()
	store.clear()
	for user in SEEDED_USERS:
		store.add_user(user)
	connections.clear()
	try:
		yield store
	finally:
		store.clear()
		connections.clear()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client