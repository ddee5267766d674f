import sys
from pathlib import Path

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from fakes import FakeRedis  # noqa: E402
from sessionagent.services.redis import RedisCrudService  # noqa: E402
from sessionagent.services.session_store import SessionStoreFactory  # noqa: E402


@pytest.fixture
def fake_redis() -> FakeRedis:
    """In-memory stand-in for the redis.asyncio client."""
    return FakeRedis()


@pytest.fixture
def redis_crud(fake_redis: FakeRedis) -> RedisCrudService:
    """RedisCrudService wired to the in-memory client."""
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = fake_redis
    return svc


@pytest.fixture
def store_factory(redis_crud: RedisCrudService) -> SessionStoreFactory:
    return SessionStoreFactory(redis_crud, key_prefix="session:", max_history=200)
