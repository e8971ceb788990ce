# tests/test_cache.py
"""Tests for RedisClientCache and its reuse / replace decisions."""

import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis_client_cache import (
    AdapterConfigException,
    ConnectionConfigException,
    ConnectionState,
    DeleteResult,
    RedisClientCache,
    configure_redis_client_cache,
    strict_equal,
)
from redis_client_cache.client.invoker import DEFAULT_OPERATIONS
from utils import DEFAULT_HOST, DEFAULT_PORT, StubAdapter, settle

# =============================================================================
# strict_equal
# =============================================================================


class TestStrictEqual:
    @pytest.mark.parametrize(
        "a,b",
        [
            ({"host": "h1", "port": 1, "opt": True}, {"opt": True, "port": 1, "host": "h1"}),
            ({"nested": {"a": [1, 2]}}, {"nested": {"a": [1, 2]}}),
            ({}, {}),
        ],
    )
    def test_equal(self, a, b):
        assert strict_equal(a, b) is True

    @pytest.mark.parametrize(
        "a,b",
        [
            ({"port": 1}, {"port": "1"}),
            ({"opt": 1}, {"opt": True}),
            ({"opt": 1}, {"opt": 1.0}),
            ({"a": [1, 2]}, {"a": [2, 1]}),
            ({"a": [1, 2]}, {"a": (1, 2)}),
            ({"a": 1}, {"a": 1, "b": 2}),
        ],
    )
    def test_not_equal(self, a, b):
        assert strict_equal(a, b) is False


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    @pytest.mark.parametrize("adapter", [None, {}, object()])
    def test_requires_adapter(self, adapter):
        with pytest.raises(AdapterConfigException):
            RedisClientCache(adapter)

    def test_configure_is_idempotent(self, adapter):
        context = SimpleNamespace()

        configure_redis_client_cache(context, adapter)
        cache = context.redis_client_cache
        assert isinstance(cache, RedisClientCache)
        for name in DEFAULT_OPERATIONS:
            assert cache.invoker.is_installed(name)

        configure_redis_client_cache(context, StubAdapter(), ["hget"])
        assert context.redis_client_cache is cache
        assert cache.adapter is adapter
        assert cache.invoker.is_installed("hget")


# =============================================================================
# get_connection / set_connection
# =============================================================================


class TestSetConnection:
    def test_empty_cache_lookups(self, cache):
        assert cache.get_connection() is None
        assert cache.get_connection("h1", 1) is None
        assert cache.get_configuration_used() is None

    def test_defaults_host_and_port(self, cache, adapter):
        conn = cache.set_connection({})

        assert conn.resolve_endpoint() == (DEFAULT_HOST, DEFAULT_PORT)
        assert cache.get_connection() is conn
        assert cache.get_connection(DEFAULT_HOST, DEFAULT_PORT) is conn
        assert cache.get_configuration_used() == {"host": DEFAULT_HOST, "port": DEFAULT_PORT}
        assert adapter.configs == [{"host": DEFAULT_HOST, "port": DEFAULT_PORT}]

    @pytest.mark.parametrize("config", [None, {}])
    def test_no_options_reuses_any_cached_connection(self, cache, config):
        conn = cache.set_connection({"db": 3})

        assert cache.set_connection(config) is conn
        assert cache.get_configuration_used() == {
            "db": 3,
            "host": DEFAULT_HOST,
            "port": DEFAULT_PORT,
        }

    def test_host_and_port_only_reuses_regardless_of_options(self, cache):
        conn = cache.set_connection({"host": "h1", "port": 1, "decode_responses": True})

        assert cache.set_connection({"host": "h1", "port": 1}) is conn
        assert cache.get_configuration_used("h1", 1)["decode_responses"] is True

    def test_different_options_replace_connection(self, cache):
        conn1 = cache.set_connection({"host": "h1", "port": 1})
        conn2 = cache.set_connection({"host": "h1", "port": 1, "decode_responses": True})

        assert conn2 is not conn1
        assert conn1.state is ConnectionState.CLOSED
        assert cache.get_connection("h1", 1) is conn2
        assert cache.get_configuration_used("h1", 1) == {
            "host": "h1",
            "port": 1,
            "decode_responses": True,
        }

    def test_reordered_options_do_not_replace(self, cache, adapter):
        conn1 = cache.set_connection({"host": "h1", "port": 1})
        conn2 = cache.set_connection({"host": "h1", "port": 1, "decode_responses": True})
        conn3 = cache.set_connection({"decode_responses": True, "port": 1, "host": "h1"})

        assert conn2 is not conn1
        assert conn3 is conn2
        assert len(adapter.clients) == 2
        adapter.clients[0].aclose.assert_awaited_once()
        adapter.clients[1].aclose.assert_not_awaited()

    def test_value_type_mismatch_replaces(self, cache):
        conn1 = cache.set_connection({"host": "h1", "port": 1, "db": 1})
        conn2 = cache.set_connection({"host": "h1", "port": 1, "db": True})

        assert conn2 is not conn1

    def test_closing_connection_replaced_with_host_and_port_only(self, cache):
        conn1 = cache.set_connection({"host": "h1", "port": 1, "db": 2})
        cache.disconnect_connection(conn1)

        cache.set_connection({"host": "h1", "port": 1})

        assert cache.get_configuration_used("h1", 1) == {"host": "h1", "port": 1}

    def test_old_connection_is_closed_outside_lock(self, cache, adapter):
        cache.set_connection({"host": "h1", "port": 1})
        acquired = []

        def try_lock_from_other_thread(*args, **kwargs):
            def attempt():
                got = cache._lock.acquire(blocking=False)
                if got:
                    cache._lock.release()
                acquired.append(got)

            worker = threading.Thread(target=attempt)
            worker.start()
            worker.join()

        adapter.clients[0].aclose.side_effect = try_lock_from_other_thread

        cache.set_connection({"host": "h1", "port": 1, "db": 3})

        assert acquired == [True]

    @pytest.mark.parametrize("port", [65535, "65535"])
    def test_port_bounds_are_accepted(self, cache, port):
        conn = cache.set_connection({"host": "h1", "port": port})

        assert cache.get_connection("h1", port) is conn

    def test_separate_endpoints_are_independent(self, cache):
        conn1 = cache.set_connection({"host": "h1", "port": 1})
        conn2 = cache.set_connection({"host": "h2", "port": 9999, "db": 1})

        assert conn1 is not conn2
        assert cache.get_connection("h1", 1) is conn1
        assert cache.get_connection("h2", 9999) is conn2

    def test_callers_config_is_not_mutated(self, cache):
        config = {"db": 1, "retry_on_timeout": [True]}
        cache.set_connection(config)

        assert config == {"db": 1, "retry_on_timeout": [True]}

        config["retry_on_timeout"].append(False)
        used = cache.get_configuration_used()
        assert used["retry_on_timeout"] == [True]

        used["db"] = 99
        assert cache.get_configuration_used()["db"] == 1

    @pytest.mark.parametrize(
        "config",
        [
            None,
            {},
            {"host": DEFAULT_HOST, "port": DEFAULT_PORT},
            {"host": DEFAULT_HOST, "port": DEFAULT_PORT, "db": 2},
        ],
    )
    def test_closing_connection_is_replaced(self, cache, config):
        conn1 = cache.set_connection({"host": DEFAULT_HOST, "port": DEFAULT_PORT, "db": 2})
        cache.disconnect_connection(conn1)
        assert conn1.is_closing()

        conn2 = cache.set_connection(config)

        assert conn2 is not conn1
        assert not conn2.is_closing()
        assert cache.get_connection() is conn2

    @pytest.mark.parametrize(
        "config",
        [
            {"host": "bad:host", "port": 1},
            {"host": "h1", "port": "port"},
            {"host": "h1", "port": 70000},
            {"host": 1234, "port": 1},
        ],
    )
    def test_illegal_endpoint_raises(self, cache, config):
        with pytest.raises(ConnectionConfigException):
            cache.set_connection(config)
        assert cache.get_stats()["total_connections"] == 0

    def test_non_mapping_config_raises(self, cache):
        with pytest.raises(ConnectionConfigException):
            cache.set_connection(["host", "h1"])

    def test_construction_failure_propagates(self, cache, adapter):
        adapter.create_client = Mock(side_effect=RuntimeError("cannot build"))

        with pytest.raises(RuntimeError, match="cannot build"):
            cache.set_connection({"host": "h1", "port": 1})
        assert cache.get_connection("h1", 1) is None

    def test_scenario(self, cache):
        conn_a = cache.set_connection({"host": "h1", "port": 1})
        conn_b = cache.set_connection({"host": "h1", "port": 1, "string_numbers": True})
        conn_c = cache.set_connection({"string_numbers": True, "port": 1, "host": "h1"})

        assert conn_b is not conn_a
        assert conn_a.is_closing()
        assert conn_c is conn_b


# =============================================================================
# delete_and_disconnect / clear_all
# =============================================================================


class TestEviction:
    def test_delete_and_disconnect(self, cache, adapter):
        cache.set_connection({"host": "h1", "port": 1})

        first = cache.delete_and_disconnect("h1", 1)
        assert first == DeleteResult(host="h1", port=1, deleted=True, disconnected=True)
        assert cache.get_connection("h1", 1) is None
        adapter.clients[0].aclose.assert_awaited_once()

        second = cache.delete_and_disconnect("h1", 1)
        assert second == DeleteResult(host="h1", port=1, deleted=False, disconnected=None)

    def test_delete_mints_new_endpoint_key(self, cache):
        cache.set_connection({"host": "h1", "port": 1})
        key1 = cache._endpoints.get("h1", 1)

        cache.delete_and_disconnect("h1", 1)
        assert cache._endpoints.get("h1", 1) is None

        cache.set_connection({"host": "h1", "port": 1})
        key2 = cache._endpoints.get("h1", 1)
        assert key2 is not key1
        assert key2 == key1

    def test_delete_evicts_even_if_disconnect_fails(self, cache):
        conn = cache.set_connection({"host": "h1", "port": 1})
        conn.disconnect = Mock(side_effect=RuntimeError("boom"))

        result = cache.delete_and_disconnect("h1", 1)

        assert result.deleted is True
        assert result.disconnected is False
        assert cache.get_connection("h1", 1) is None

    def test_close_failure_is_logged_not_raised(self, cache, adapter):
        cache.set_connection({"host": "h1", "port": 1})
        adapter.clients[0].aclose.side_effect = RedisConnectionError("gone")

        result = cache.delete_and_disconnect("h1", 1)

        assert result.deleted is True
        assert result.disconnected is True

    def test_clear_all(self, cache):
        conn1 = cache.set_connection({"host": "h1", "port": 1})
        conn2 = cache.set_connection({"host": "h2", "port": 2})
        conn2.disconnect = Mock(side_effect=RuntimeError("boom"))

        results = cache.clear_all()

        assert results == [
            DeleteResult(host="h1", port=1, deleted=True, disconnected=True),
            DeleteResult(host="h2", port=2, deleted=True, disconnected=False),
        ]
        assert conn1.state is ConnectionState.CLOSED
        assert cache.get_stats()["total_connections"] == 0
        assert cache.clear_all() == []

    @pytest.mark.asyncio
    async def test_disconnect_runs_in_background(self, cache, adapter):
        conn = cache.set_connection({"host": "h1", "port": 1})
        await settle()

        assert cache.disconnect_connection(conn) is True
        assert conn.state is ConnectionState.CLOSING
        adapter.clients[0].aclose.assert_not_awaited()

        await cache.wait_closed()
        assert conn.state is ConnectionState.CLOSED
        adapter.clients[0].aclose.assert_awaited_once()

    def test_disconnect_edge_cases(self, cache):
        assert cache.disconnect_connection(None) is None

        conn = cache.set_connection({"host": "h1", "port": 1})
        assert cache.disconnect_connection(conn) is True
        assert cache.disconnect_connection(conn) is True


# =============================================================================
# Closing / unusable replacement
# =============================================================================


class TestReplacement:
    def test_get_or_replace_if_closing(self, cache):
        assert cache.get_or_replace_if_closing("h1", 1) is None

        conn1 = cache.set_connection({"host": "h1", "port": 1, "db": 4})
        assert cache.get_or_replace_if_closing("h1", 1) is conn1

        cache.disconnect_connection(conn1)
        conn2 = cache.get_or_replace_if_closing("h1", 1)

        assert conn2 is not conn1
        assert not conn2.is_closing()
        assert cache.get_connection("h1", 1) is conn2
        assert cache.get_configuration_used("h1", 1) == {"host": "h1", "port": 1, "db": 4}

    def test_replace_if_closing_falls_back_to_connection_options(self, cache):
        conn1 = cache.set_connection({"host": "h1", "port": 1, "db": 5})
        cache.delete_and_disconnect("h1", 1)

        conn2 = cache.replace_if_closing(conn1)

        assert conn2 is not conn1
        assert cache.get_configuration_used("h1", 1) == {"host": "h1", "port": 1, "db": 5}

    @pytest.mark.asyncio
    async def test_replace_if_unusable_keeps_usable_connection(self, cache):
        conn = cache.set_connection({"host": "h1", "port": 1})
        await settle()

        assert await cache.replace_if_unusable(conn) is conn
        assert cache.get_connection("h1", 1) is conn

    @pytest.mark.asyncio
    async def test_replace_if_unusable_replaces_failing_connection(self, cache, adapter):
        conn1 = cache.set_connection({"host": "h1", "port": 1, "db": 6})
        await settle()
        adapter.clients[0].ping.side_effect = RedisConnectionError("down")

        conn2 = await cache.replace_if_unusable(conn1)

        assert conn2 is not conn1
        assert conn1.is_closing()
        assert cache.get_connection("h1", 1) is conn2
        assert cache.get_configuration_used("h1", 1) == {"host": "h1", "port": 1, "db": 6}
        await cache.wait_closed()

    @pytest.mark.asyncio
    async def test_replace_if_unusable_prefers_given_config(self, cache, adapter):
        conn1 = cache.set_connection({"host": "h1", "port": 1, "db": 6})
        await settle()
        adapter.clients[0].ping.side_effect = RedisConnectionError("down")
        config = {"host": "h1", "port": 1, "db": 7}

        conn2 = await cache.replace_if_unusable(conn1, config)

        assert conn2 is not conn1
        assert cache.get_configuration_used("h1", 1) == {"host": "h1", "port": 1, "db": 7}
        assert config == {"host": "h1", "port": 1, "db": 7}
        await cache.wait_closed()

    @pytest.mark.asyncio
    async def test_set_connection_and_replace_if_unusable(self, cache, adapter):
        conn1 = await cache.set_connection_and_replace_if_unusable({"host": "h1", "port": 1})
        await settle()
        assert cache.get_connection("h1", 1) is conn1

        adapter.clients[0].ping.side_effect = RedisConnectionError("down")
        conn2 = await cache.set_connection_and_replace_if_unusable({"host": "h1", "port": 1})

        assert conn2 is not conn1
        assert cache.get_connection("h1", 1) is conn2
        await cache.wait_closed()

    @pytest.mark.asyncio
    async def test_replace_if_unusable_keeps_newer_connection(self, cache, adapter):
        stale = cache.set_connection({"host": "h1", "port": 1})
        current = cache.set_connection({"host": "h1", "port": 1, "db": 3})
        await settle()

        replacement = await cache.replace_if_unusable(stale)

        assert replacement is current
        assert not current.is_closing()
        assert cache.get_connection("h1", 1) is current
        assert len(adapter.clients) == 2
        adapter.clients[1].aclose.assert_not_awaited()
        await cache.wait_closed()

    @pytest.mark.asyncio
    async def test_replace_if_unusable_with_config_goes_through_set_connection(
        self, cache, adapter
    ):
        stale = cache.set_connection({"host": "h1", "port": 1})
        current = cache.set_connection({"host": "h1", "port": 1, "db": 3})
        await settle()

        replacement = await cache.replace_if_unusable(stale, {"host": "h1", "port": 1, "db": 3})

        assert replacement is current
        assert not current.is_closing()
        assert len(adapter.clients) == 2
        await cache.wait_closed()

    def test_replace_if_closing_keeps_newer_connection(self, cache, adapter):
        stale = cache.set_connection({"host": "h1", "port": 1})
        current = cache.set_connection({"host": "h1", "port": 1, "db": 3})
        assert stale.is_closing()

        assert cache.replace_if_closing(stale) is current
        assert not current.is_closing()
        assert cache.get_connection("h1", 1) is current
        assert len(adapter.clients) == 2

    def test_replace_if_closing_replaces_closing_current(self, cache, adapter):
        stale = cache.set_connection({"host": "h1", "port": 1})
        current = cache.set_connection({"host": "h1", "port": 1, "db": 3})
        cache.disconnect_connection(current)

        replacement = cache.replace_if_closing(stale)

        assert replacement is not current
        assert replacement is not stale
        assert cache.get_connection("h1", 1) is replacement
        assert cache.get_configuration_used("h1", 1) == {"host": "h1", "port": 1, "db": 3}


# =============================================================================
# Stats
# =============================================================================


class TestStats:
    def test_get_stats(self, cache):
        cache.set_connection({"host": "h1", "port": 1})
        cache.set_connection({"host": "h2", "port": 2})

        stats = cache.get_stats()

        assert stats["total_connections"] == 2
        assert [c["key"] for c in stats["connections"]] == ["h1:1", "h2:2"]
        assert all(c["closing"] is False for c in stats["connections"])
        assert all(c["state"] == "constructing" for c in stats["connections"])
