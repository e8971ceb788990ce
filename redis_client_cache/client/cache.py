"""Cache of redis connections by endpoint.

This module keeps at most one live connection per (host, port) and decides, for
every request, whether the cached connection can be reused or must be replaced:

- no options, or only host & port: reuse whatever is cached
- options strictly equal to the ones the cached connection was built with: reuse
- anything else: replace the cached connection and disconnect the old one

A cached connection that is already closing is always replaced.
"""

import asyncio
import copy
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import ujson

from redis_client_cache.client.adapter import RedisAdapter
from redis_client_cache.client.check import verify_host_port
from redis_client_cache.client.connection import Connection
from redis_client_cache.client.endpoint import EndpointKey, EndpointRegistry
from redis_client_cache.client.hooks import attach_lifecycle_hooks
from redis_client_cache.client.invoker import RedirectAwareInvoker
from redis_client_cache.client.probe import UsabilityProbe
from redis_client_cache.exceptions import (
    AdapterConfigException,
    ConnectionConfigException,
    ExceptionsMessage,
)

logger = logging.getLogger(__name__)


def strict_equal(a: Any, b: Any) -> bool:
    """Deep equality where types must match too, so ``1``, ``1.0`` and ``True`` differ.

    Key order of mappings is irrelevant.
    """
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(strict_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(strict_equal(x, y) for x, y in zip(a, b))
    return a == b


def resolve_host_and_port(
    config: Dict[str, Any],
    default_host: str,
    default_port: Union[int, str],
) -> Tuple[str, Union[int, str]]:
    """Resolve host & port from the given options, writing any defaults back into them."""
    host = config.get("host")
    port = config.get("port")

    if not host:
        host = default_host
        config["host"] = host

    if not port:
        port = default_port
        config["port"] = port

    return verify_host_port(host, port)


def render(config: Optional[Dict[str, Any]]) -> str:
    try:
        return ujson.dumps(config, sort_keys=True)
    except (TypeError, OverflowError, ValueError):
        return repr(config)


@dataclass
class ConnectionRecord:
    """A cached connection and the options it was constructed with.

    Attributes:
        endpoint: Interned endpoint key the record is filed under
        connection: The cached connection
        config_used: Snapshot of the options used to construct the connection
        created_at: Unix timestamp when the connection was cached
    """

    endpoint: EndpointKey
    connection: Connection
    config_used: Dict[str, Any]
    created_at: float = field(default_factory=time.time)

    @property
    def age(self) -> float:
        return time.time() - self.created_at


@dataclass
class DeleteResult:
    """Outcome of evicting one endpoint.

    ``disconnected`` is True when a disconnect was started (or the connection was
    already closing), False when starting it failed, and None when no connection
    was cached.
    """

    host: str
    port: Union[int, str]
    deleted: bool
    disconnected: Optional[bool] = None


class RedisClientCache:
    """Caches one redis connection per endpoint for the life of the process.

    Instances are explicit: create one per adapter and pass it around (see
    ``configure_redis_client_cache``).
    """

    def __init__(self, adapter: RedisAdapter):
        if not isinstance(adapter, RedisAdapter):
            raise AdapterConfigException(message=ExceptionsMessage.NoAdapter)
        self._adapter = adapter
        self._lock = threading.RLock()
        self._endpoints = EndpointRegistry()
        self._records: Dict[str, ConnectionRecord] = {}
        # keeps fire-and-forget disconnect tasks referenced until they finish
        self._background_tasks: Set[asyncio.Task] = set()
        self._invoker = RedirectAwareInvoker(self)
        self._probe = UsabilityProbe(self._invoker)

    @property
    def adapter(self) -> RedisAdapter:
        return self._adapter

    @property
    def invoker(self) -> RedirectAwareInvoker:
        return self._invoker

    @property
    def probe(self) -> UsabilityProbe:
        return self._probe

    def _default_endpoint(
        self, host: Optional[str], port: Optional[Union[int, str]]
    ) -> Tuple[str, Union[int, str]]:
        return host or self._adapter.default_host, port or self._adapter.default_port

    def _get_record(
        self, host: Optional[str] = None, port: Optional[Union[int, str]] = None
    ) -> Optional[ConnectionRecord]:
        host, port = self._default_endpoint(host, port)
        with self._lock:
            key = self._endpoints.get(host, port)
            return self._records.get(key.key) if key else None

    def _evict(self, key: EndpointKey) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._records.pop(key.key, None)
            self._endpoints.remove(key)
        if record is not None:
            logger.debug(
                f"Deleted redis connection for host ({key.host}) & port ({key.port}) from cache"
            )
        return record

    @staticmethod
    def _copy_config(config: Optional[Mapping]) -> Dict[str, Any]:
        if config is None:
            return {}
        if not isinstance(config, Mapping):
            raise ConnectionConfigException(message=ExceptionsMessage.ConfigType % type(config))
        return copy.deepcopy(dict(config))

    def get_connection(
        self, host: Optional[str] = None, port: Optional[Union[int, str]] = None
    ) -> Optional[Connection]:
        """Return the connection cached for host & port (or the defaults), if any."""
        record = self._get_record(host, port)
        return record.connection if record else None

    def get_configuration_used(
        self, host: Optional[str] = None, port: Optional[Union[int, str]] = None
    ) -> Optional[Dict[str, Any]]:
        """Return a copy of the options the cached connection was built with, if any."""
        record = self._get_record(host, port)
        return copy.deepcopy(record.config_used) if record else None

    def set_connection(self, config: Optional[Mapping] = None) -> Connection:
        """Return a cached connection compatible with the given options, creating one if needed.

        Args:
            config: Redis client constructor options. Missing host and/or port fall
                back to the adapter defaults. The caller's mapping is never mutated.

        Returns:
            The previously cached connection when it is compatible and not closing,
            otherwise a newly created and cached connection.

        Raises:
            ConnectionConfigException: If the options or the host/port are illegal
        """
        options = self._copy_config(config)
        host, port = resolve_host_and_port(
            options, self._adapter.default_host, self._adapter.default_port
        )

        with self._lock:
            key = self._endpoints.get(host, port)
            record = self._records.get(key.key) if key else None
            if record is None:
                return self.create_new_connection(options)

            if not config:
                return self._reuse_if_not_closing(
                    record, options, "with ANY options, since no options were specified"
                )

            if len(options) == 2:
                return self._reuse_if_not_closing(
                    record, options, "with ANY options, since only host & port were specified"
                )

            if strict_equal(record.config_used, options):
                return self._reuse_if_not_closing(record, options, "with identical options")

            logger.warning(
                f"Replacing INCOMPATIBLE cached redis connection ({render(record.config_used)}) "
                f"for host ({host}) & port ({port}) with new connection ({render(options)})"
            )
            self._evict(record.endpoint)
            connection = self.create_new_connection(options)

        self.disconnect_connection(record.connection)
        return connection

    def _reuse_if_not_closing(
        self, record: ConnectionRecord, options: Dict[str, Any], with_desc: str
    ) -> Connection:
        host, port = record.endpoint.host, record.endpoint.port
        if not record.connection.is_closing():
            logger.debug(
                f"Reusing cached redis connection for host ({host}) & port ({port}) {with_desc}"
            )
            return record.connection

        logger.debug(
            f"Replacing CLOSING redis connection with a new one for host ({host}) & port ({port}) "
            f"{with_desc}"
        )
        self._evict(record.endpoint)
        return self.create_new_connection(options)

    def create_new_connection(self, config: Optional[Mapping] = None) -> Connection:
        """Create, cache and start a new connection.

        Missing host and/or port are written into ``config`` before the adapter sees
        it; the cache keeps its own snapshot of the options actually used.
        """
        if config is None:
            config = {}
        elif not isinstance(config, dict):
            config = self._copy_config(config)
        host, port = resolve_host_and_port(
            config, self._adapter.default_host, self._adapter.default_port
        )

        start = time.time()
        config_used = copy.deepcopy(config)
        connection = self._adapter.create_connection(config)
        logger.debug(
            f"Created a new redis connection for host ({host}) & port ({port}) - "
            f"took {int((time.time() - start) * 1000)} ms"
        )

        with self._lock:
            key = self._endpoints.get_or_create(host, port)
            self._records[key.key] = ConnectionRecord(
                endpoint=key, connection=connection, config_used=config_used
            )

        attach_lifecycle_hooks(self, connection, started_at=start)
        connection.open()
        return connection

    def discard(self, connection: Connection) -> bool:
        """Evict the given connection if it is the one currently cached for its endpoint."""
        host, port = connection.resolve_endpoint()
        with self._lock:
            key = self._endpoints.get(host, port)
            record = self._records.get(key.key) if key else None
            if record is None or record.connection is not connection:
                return False
            return self._evict(key) is not None

    def disconnect_connection(self, connection: Optional[Connection]) -> Optional[bool]:
        """Start disconnecting the given connection.

        The close runs as a background task when an event loop is running, otherwise
        it runs to completion before returning. Failures are logged, never raised.

        Returns:
            None if no connection was given, True if the disconnect was started or the
            connection was already closing, False if starting the disconnect failed
        """
        if connection is None:
            return None

        host, port = connection.resolve_endpoint()
        if connection.is_closing():
            return True

        start = time.time()
        try:
            closing = connection.disconnect()
        except Exception:
            logger.error(
                f"Failed to disconnect redis connection from host ({host}) & port ({port})",
                exc_info=True,
            )
            return False

        if closing is not None:
            self._run_in_background(closing, host, port, start)
        return True

    def _run_in_background(self, closing, host: str, port: Union[int, str], start: float) -> None:
        async def close():
            try:
                await closing
            except Exception:
                logger.error(
                    f"Failed to disconnect redis connection from host ({host}) & port ({port}) - "
                    f"took {int((time.time() - start) * 1000)} ms",
                    exc_info=True,
                )
            else:
                logger.debug(
                    f"Disconnected redis connection from host ({host}) & port ({port}) - "
                    f"took {int((time.time() - start) * 1000)} ms"
                )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(close())
            return

        task = loop.create_task(close())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def wait_closed(self) -> None:
        """Wait for every pending background disconnect to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def delete_and_disconnect(
        self, host: Optional[str] = None, port: Optional[Union[int, str]] = None
    ) -> DeleteResult:
        """Evict the connection cached for host & port and start disconnecting it."""
        host, port = self._default_endpoint(host, port)
        with self._lock:
            key = self._endpoints.get(host, port)
            record = self._evict(key) if key else None
        disconnected = self.disconnect_connection(record.connection) if record else None
        return DeleteResult(
            host=host, port=port, deleted=record is not None, disconnected=disconnected
        )

    def clear_all(self) -> List[DeleteResult]:
        """Evict and disconnect every cached connection, one result per endpoint."""
        results = []
        for key in self._endpoints.keys():
            record = self._evict(key)
            if record is None:
                results.append(DeleteResult(host=key.host, port=key.port, deleted=False))
                continue
            disconnected = self.disconnect_connection(record.connection)
            results.append(
                DeleteResult(host=key.host, port=key.port, deleted=True, disconnected=disconnected)
            )
        return results

    def get_or_replace_if_closing(
        self, host: Optional[str] = None, port: Optional[Union[int, str]] = None
    ) -> Optional[Connection]:
        """Return the cached connection, replacing it first if it is already closing."""
        connection = self.get_connection(host, port)
        if connection is not None and connection.is_closing():
            return self.replace_if_closing(connection)
        return connection

    def replace_if_closing(self, connection: Connection) -> Connection:
        """Return the connection if still open, otherwise a replacement built from its options."""
        host, port = connection.resolve_endpoint()
        if not connection.is_closing():
            logger.debug(f"Reusing open redis connection for host ({host}) & port ({port})")
            return connection

        logger.debug(
            f"Replacing CLOSING redis connection for host ({host}) & port ({port}) with a new one"
        )
        return self._replace(connection, None)

    async def is_usable(self, connection: Connection) -> bool:
        return await self._probe.is_usable(connection)

    async def replace_if_unusable(
        self, connection: Connection, config: Optional[Mapping] = None
    ) -> Connection:
        """Probe the connection and replace it if the probe fails.

        The replacement is built from ``config`` if given, else from the options
        cached for the connection's endpoint, else from the connection's own options.
        If the cache already holds a newer open connection for the endpoint, that one
        is returned (or run through ``set_connection`` when ``config`` is given).
        """
        usable = await self._probe.is_usable(connection)
        host, port = connection.resolve_endpoint()

        if usable:
            logger.debug(f"Reusing USABLE redis connection for host ({host}) & port ({port})")
            return connection

        logger.debug(
            f"Replacing UNUSABLE redis connection for host ({host}) & port ({port}) with a new one"
        )
        return self._replace(connection, config)

    async def set_connection_and_replace_if_unusable(
        self, config: Optional[Mapping] = None
    ) -> Connection:
        connection = self.set_connection(config)
        return await self.replace_if_unusable(connection, config)

    def _replace(self, connection: Connection, config: Optional[Mapping]) -> Connection:
        """Replace ``connection``, leaving a newer open connection for its endpoint in place."""
        host, port = connection.resolve_endpoint()
        with self._lock:
            key = self._endpoints.get(host, port)
            record = self._records.get(key.key) if key else None
            current = record.connection if record else None
            superseded = (
                current is not None and current is not connection and not current.is_closing()
            )
            if record is not None and not superseded:
                self._evict(key)

        self.disconnect_connection(connection)

        if superseded:
            if config is None:
                logger.debug(
                    f"Keeping newer cached redis connection for host ({host}) & port ({port})"
                )
                return current
            return self.set_connection(config)

        if config is None:
            config = record.config_used if record else connection.get_configuration()
        return self.create_new_connection(self._copy_config(config))

    def install_operation(self, name: str) -> None:
        self._invoker.install(name)

    def install_operations(self, names: Optional[Iterable[str]] = None) -> List[str]:
        return self._invoker.install_many(names)

    async def invoke(self, connection: Connection, name: str, *args, **kwargs) -> Any:
        """Run an installed operation on the connection, following one MOVED redirection."""
        return await self._invoker.invoke(connection, name, *args, **kwargs)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._records.values())
        return {
            "total_connections": len(records),
            "connections": [
                {
                    "key": r.endpoint.key,
                    "host": r.endpoint.host,
                    "port": r.endpoint.port,
                    "state": r.connection.state.value,
                    "closing": r.connection.is_closing(),
                    "age": r.age,
                }
                for r in records
            ],
        }


def configure_redis_client_cache(
    context: Any,
    adapter: RedisAdapter,
    operation_names: Optional[Iterable[str]] = None,
) -> Any:
    """Attach a ``RedisClientCache`` to ``context.redis_client_cache`` unless one is set.

    Also installs the named (or default) redirect-aware operations on the cache.
    """
    cache = getattr(context, "redis_client_cache", None)
    if cache is None:
        cache = RedisClientCache(adapter)
        context.redis_client_cache = cache
    cache.install_operations(operation_names)
    return context
