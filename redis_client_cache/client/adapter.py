"""Redis adapters for the redis client cache.

An adapter hides which redis implementation backs the cached connections. It
supplies the default endpoint, builds connections, keeps the registry of named
operations that can be invoked on a connection, and recognises ``MOVED``
redirections raised by clustered servers.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from redis.asyncio import Redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import MovedError, ResponseError

from redis_client_cache.client.check import is_legal_operation_name
from redis_client_cache.client.connection import LifecycleEvent, RedisConnection
from redis_client_cache.exceptions import ExceptionsMessage, ParamError
from redis_client_cache.settings import Config

logger = logging.getLogger(__name__)

Operation = Callable[..., Awaitable[Any]]

MOVED_PREFIX = "MOVED "


class RedisAdapter(ABC):
    """Abstract base class for redis adapters.

    Operations are coroutine functions called as ``operation(connection, *args,
    **kwargs)``. Operations registered with ``set_operation`` take precedence over
    the commands of the redis client itself.
    """

    # command surface shared by every redis.asyncio compatible client
    client_class = Redis

    def __init__(
        self,
        default_host: Optional[str] = None,
        default_port: Optional[Union[int, str]] = None,
        connect_retries: Optional[int] = None,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        self.default_host = default_host or Config.REDIS_HOST
        self.default_port = default_port or Config.REDIS_PORT
        self._connect_retries = connect_retries
        self._backoff = backoff
        self._operations: Dict[str, Operation] = {}

    @abstractmethod
    def create_client(self, config: Dict[str, Any]) -> Any:
        """Build the underlying redis client for the given options."""

    def create_connection(self, config: Dict[str, Any]) -> RedisConnection:
        client = self.create_client(config)
        return RedisConnection(
            client, config, retries=self._connect_retries, backoff=self._backoff
        )

    def get_operation(self, name: str) -> Optional[Operation]:
        if name in self._operations:
            return self._operations[name]
        if not is_legal_operation_name(name) or not callable(getattr(self.client_class, name, None)):
            return None
        return self._client_operation(name)

    def set_operation(self, name: str, operation: Operation) -> None:
        if not is_legal_operation_name(name):
            raise ParamError(message=ExceptionsMessage.OperationName % name)
        self._operations[name] = operation

    def delete_operation(self, name: str) -> bool:
        return self._operations.pop(name, None) is not None

    def _client_operation(self, name: str) -> Operation:
        adapter = self

        async def call_client(connection: RedisConnection, *args, **kwargs):
            try:
                return await getattr(connection.client, name)(*args, **kwargs)
            except ResponseError as e:
                if not adapter.is_relocation_signal(e):
                    connection.emit(LifecycleEvent.CLIENT_ERROR, e)
                raise

        call_client.__name__ = name
        return call_client

    def is_relocation_signal(self, error: BaseException) -> bool:
        if isinstance(error, MovedError):
            return True
        return isinstance(error, ResponseError) and str(error).startswith(MOVED_PREFIX)

    def extract_relocation_target(self, error: BaseException) -> Tuple[str, int]:
        """Return the (host, port) a ``MOVED`` redirection points at.

        The reply reads ``MOVED <slot> <host>:<port>``; redis-py strips the
        ``MOVED`` prefix and exposes host & port on ``MovedError``.
        """
        host = getattr(error, "host", None)
        port = getattr(error, "port", None)
        if host and port:
            return host, int(port)

        message = str(error)
        if message.startswith(MOVED_PREFIX):
            message = message[len(MOVED_PREFIX) :]
        try:
            _, node = message.split(" ")
            host, port = node.rsplit(":", 1)
            return host, int(port)
        except ValueError:
            raise ParamError(message=ExceptionsMessage.NotRelocation % error) from error


class RedisPyAdapter(RedisAdapter):
    """Adapter backed by ``redis.asyncio.Redis``."""

    def create_client(self, config: Dict[str, Any]) -> Redis:
        return Redis(**config)


class FakeRedisAdapter(RedisAdapter):
    """Adapter backed by fakeredis, an in-memory redis for tests and local runs."""

    def create_client(self, config: Dict[str, Any]) -> Redis:
        from fakeredis.aioredis import FakeRedis  # noqa: PLC0415

        return FakeRedis(**config)
