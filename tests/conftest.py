import pytest

from backend import RedisCache
from session_state import SessionStore
from fakes import FakeNetwork, FakeRedis


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return RedisCache(redis_client=fake_redis, namespace="test")


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def network():
    return FakeNetwork()
