# tests/services/test_redis_service.py
"""
Unit tests for the Redis store.

Uses mock-first approach to test without requiring a real Redis instance.
"""
import pytest
from unittest.mock import AsyncMock, patch

from theme_guard.core.exceptions import StoreUnavailableError
from theme_guard.services.redis_service import (
    INCREMENT_WITH_TTL_SCRIPT,
    RedisConfig,
    RedisStore,
    create_redis_store,
)


@pytest.fixture
def mock_config():
    """Create a test configuration"""
    return RedisConfig(
        url="redis://localhost:6379/0",
        key_prefix="test:",
        socket_timeout=1.0
    )


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client"""
    client = AsyncMock()

    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.eval = AsyncMock(return_value=1)
    client.expire = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={
        "redis_version": "7.2.0",
        "connected_clients": 3,
    })
    client.aclose = AsyncMock()

    return client


@pytest.fixture
async def redis_store(mock_config, mock_redis_client):
    """Create a Redis store with mocked client"""
    store = RedisStore(mock_config)

    with patch('theme_guard.services.redis_service.redis.from_url', return_value=mock_redis_client):
        await store.initialize()

    return store


class TestInitialization:

    async def test_initialization(self, mock_config, mock_redis_client):
        store = RedisStore(mock_config)

        assert not store.is_initialized

        with patch('theme_guard.services.redis_service.redis.from_url', return_value=mock_redis_client) as from_url:
            await store.initialize()

        assert store.is_initialized
        assert store.is_connected()
        mock_redis_client.ping.assert_called_once()
        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_timeout"] == 1.0
        assert kwargs["decode_responses"] is False

    async def test_initialization_from_env(self):
        with patch.dict('os.environ', {
            'REDIS_DIRECT_URI': 'redis://direct:6379',
            'REDIS_URL': 'redis://standard:6379'
        }):
            store = RedisStore()

            # Should prefer REDIS_DIRECT_URI
            assert store.config.url == 'redis://direct:6379'
            assert store._url_source == 'REDIS_DIRECT_URI'

    async def test_no_redis_url(self):
        with patch.dict('os.environ', {}, clear=True):
            store = RedisStore()

            assert store.config.url is None

            # Initializes without error but with no client
            await store.initialize()
            assert store.is_initialized
            assert not store.is_connected()

            with pytest.raises(StoreUnavailableError):
                await store.get("session:abc")

    async def test_connection_failure(self, mock_config):
        store = RedisStore(mock_config)

        failing_client = AsyncMock()
        failing_client.ping.side_effect = ConnectionError("Connection refused")

        with patch('theme_guard.services.redis_service.redis.from_url', return_value=failing_client):
            await store.initialize()

        assert store.is_initialized
        assert not store.is_connected()

    async def test_create_redis_store(self, mock_redis_client):
        with patch('theme_guard.services.redis_service.redis.from_url', return_value=mock_redis_client):
            store = await create_redis_store("redis://localhost:6379/1", key_prefix="site:")

        assert store.is_connected()
        assert store.config.key_prefix == "site:"

    async def test_create_redis_store_unreachable(self):
        failing_client = AsyncMock()
        failing_client.ping.side_effect = ConnectionError("Connection refused")

        with patch('theme_guard.services.redis_service.redis.from_url', return_value=failing_client):
            store = await create_redis_store("redis://localhost:6379/1")

        assert not store.is_connected()
        with pytest.raises(StoreUnavailableError):
            await store.atomic_increment("rl:search:abc:count", 60)


class TestOperations:

    async def test_get_uses_prefix(self, redis_store, mock_redis_client):
        mock_redis_client.get.return_value = b"5"

        assert await redis_store.get("rl:search:abc:count") == b"5"
        mock_redis_client.get.assert_called_once_with("test:rl:search:abc:count")

    async def test_set_with_ttl(self, redis_store, mock_redis_client):
        assert await redis_store.set("session:abc", b"{}", 1440)

        mock_redis_client.set.assert_called_once_with("test:session:abc", b"{}", ex=1440)

    async def test_set_rejects_non_positive_ttl(self, redis_store, mock_redis_client):
        assert not await redis_store.set("session:abc", b"{}", 0)

        mock_redis_client.set.assert_not_called()

    async def test_delete(self, redis_store, mock_redis_client):
        assert await redis_store.delete("session:abc")

        mock_redis_client.delete.return_value = 0
        assert not await redis_store.delete("session:abc")

    async def test_atomic_increment_uses_script(self, redis_store, mock_redis_client):
        mock_redis_client.eval.return_value = 3

        assert await redis_store.atomic_increment("rl:search:abc:count", 60) == 3
        mock_redis_client.eval.assert_called_once_with(
            INCREMENT_WITH_TTL_SCRIPT, 1, "test:rl:search:abc:count", 1, 60000
        )

    async def test_atomic_increment_fractional_ttl(self, redis_store, mock_redis_client):
        await redis_store.atomic_increment("rl:search:abc:count", 60.001)

        assert mock_redis_client.eval.call_args.args[-1] == 60001

    async def test_touch_slides_ttl(self, redis_store, mock_redis_client):
        mock_redis_client.expire.return_value = True

        assert await redis_store.touch("session:abc", 1440)
        mock_redis_client.expire.assert_called_once_with("test:session:abc", 1440)

    async def test_touch_missing_key(self, redis_store, mock_redis_client):
        mock_redis_client.expire.return_value = False

        assert not await redis_store.touch("session:abc", 1440)

    @pytest.mark.parametrize("operation,args", [
        ("get", ("k",)),
        ("set", ("k", b"v", 10)),
        ("delete", ("k",)),
        ("touch", ("k", 10)),
        ("atomic_increment", ("k", 10)),
    ])
    async def test_errors_become_store_unavailable(self, redis_store, mock_redis_client, operation, args):
        client_method = {"atomic_increment": "eval", "touch": "expire"}.get(operation, operation)
        getattr(mock_redis_client, client_method).side_effect = TimeoutError("timed out")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await getattr(redis_store, operation)(*args)

        assert exc_info.value.operation == operation


class TestHealth:

    async def test_health_check_connected(self, redis_store):
        health = await redis_store.health_check()

        assert health["healthy"]
        assert health["status"] == "connected"
        assert health["details"]["redis_version"] == "7.2.0"

    async def test_health_check_disabled(self):
        with patch.dict('os.environ', {}, clear=True):
            store = RedisStore()

            health = await store.health_check()

        assert not health["healthy"]
        assert health["status"] == "disabled"

    async def test_health_check_error(self, redis_store, mock_redis_client):
        mock_redis_client.ping.side_effect = ConnectionError("gone")

        health = await redis_store.health_check()

        assert not health["healthy"]
        assert health["status"] == "error"

    async def test_shutdown(self, redis_store, mock_redis_client):
        await redis_store.shutdown()

        mock_redis_client.aclose.assert_called_once()
        assert not redis_store.is_initialized
        assert not redis_store.is_connected()
