import os

# Settings are read at import time.
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import fakeredis
import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from audit import AuditLog
from challenge import ChallengeEngine, compute_hash, meets_difficulty
from config_manager import ConfigManager
from store import AtomicStore

ADMIN_KEY = os.environ["ADMIN_API_KEY"]
START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class BrokenRedis:
    """Every command fails the way an unreachable server does."""

    def pipeline(self, *args, **kwargs):
        raise RedisConnectionError("store down")

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise RedisConnectionError("store down")
        return _fail


def mine(challenge_id: str, difficulty: int) -> int:
    nonce = 0
    while not meets_difficulty(compute_hash(challenge_id, nonce), difficulty):
        nonce += 1
    return nonce


def miss(challenge_id: str, difficulty: int) -> int:
    nonce = 0
    while meets_difficulty(compute_hash(challenge_id, nonce), difficulty):
        nonce += 1
    return nonce


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(fake_redis):
    return AtomicStore(fake_redis, prefix="test", timeout=1.0)


@pytest.fixture
def broken_store():
    return AtomicStore(BrokenRedis(), prefix="test", timeout=1.0)


@pytest.fixture
def audit(store):
    return AuditLog(store)


@pytest.fixture
def engine(store, audit, clock):
    return ChallengeEngine(store, audit=audit, clock=clock)


@pytest.fixture
def config_manager(store, audit, clock):
    return ConfigManager(store, audit, clock=clock)


@pytest.fixture
def app(store, clock):
    import main
    from dependencies import get_clock, get_store

    main.app.dependency_overrides[get_store] = lambda: store
    main.app.dependency_overrides[get_clock] = lambda: clock
    yield main.app
    main.app.dependency_overrides.clear()


@pytest.fixture
def upstream(monkeypatch):
    """Replace the upstream proxy and record what reaches it."""
    import main
    from fastapi import Response

    calls = []

    async def fake_forward(*, request, upstream_url, client_ip, body=None):
        calls.append({"method": request.method, "url": upstream_url, "ip": client_ip, "body": body})
        return Response(content=b"upstream ok", status_code=200)

    monkeypatch.setattr(main, "forward_request", fake_forward)
    return calls


@pytest.fixture
def http(app):
    def _client(ip: str = "1.2.3.4") -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app, client=(ip, 5555)),
            base_url="http://testserver",
        )
    return _client
