import pytest
from redis_client_cache import RedisClientCache
from utils import StubAdapter


@pytest.fixture
def adapter():
    return StubAdapter()


@pytest.fixture
def cache(adapter):
    return RedisClientCache(adapter)
