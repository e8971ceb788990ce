"""Redirect-aware invocation of redis operations.

Every operation installed on the invoker is wrapped so that a ``MOVED``
redirection makes the cache produce a connection for the new endpoint and the
same call is retried once against it. Any other failure disconnects the
connection that raised it.
"""

import copy
import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from redis_client_cache.client.adapter import Operation
from redis_client_cache.client.check import is_legal_operation_name
from redis_client_cache.client.connection import Connection
from redis_client_cache.exceptions import (
    ExceptionsMessage,
    OperationNotFoundException,
    OperationNotInstalledException,
    ParamError,
)

if TYPE_CHECKING:
    from redis_client_cache.client.cache import RedisClientCache

logger = logging.getLogger(__name__)

DEFAULT_OPERATIONS = ("delete", "get", "set", "getset", "info", "ping", "expire")

# lifecycle and factory methods of the client, not server commands
NON_WRAPPABLE_OPERATIONS = ("aclose", "close", "pipeline", "pubsub")


def missing_operation(name: str) -> Operation:
    async def missing(connection: Connection, *args, **kwargs):
        raise OperationNotFoundException(message=ExceptionsMessage.OperationMissing % name)

    missing.__name__ = name
    return missing


class RedirectAwareInvoker:
    """Table of redirect-aware operations built from a cache's redis adapter."""

    def __init__(self, cache: "RedisClientCache"):
        self._cache = cache
        self._adapter = cache.adapter
        self._lock = threading.Lock()
        self._operations: Dict[str, Operation] = {}

    def is_installed(self, name: str) -> bool:
        return name in self._operations

    @property
    def installed(self) -> List[str]:
        return list(self._operations)

    def install(self, name: str) -> None:
        """Install the redirect-aware version of the named operation, once."""
        if not is_legal_operation_name(name):
            raise ParamError(message=ExceptionsMessage.OperationName % name)

        with self._lock:
            if name in self._operations:
                return
            self._operations[name] = self._wrap(name, self._resolve(name))

    def install_many(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Install the named operations, or ``DEFAULT_OPERATIONS`` if none are named.

        Returns the names that were eligible for installation.
        """
        targeted = list(DEFAULT_OPERATIONS if names is None else names)
        unusable = [n for n in targeted if n in NON_WRAPPABLE_OPERATIONS]
        if unusable:
            logger.warning(f"Cannot install non-command operations: {unusable}")

        usable = [n for n in targeted if n not in NON_WRAPPABLE_OPERATIONS]
        for name in usable:
            self.install(name)
        return usable

    async def invoke(self, connection: Connection, name: str, *args, **kwargs) -> Any:
        operation = self._operations.get(name)
        if operation is None:
            raise OperationNotInstalledException(
                message=ExceptionsMessage.OperationNotInstalled % (name, name)
            )
        return await operation(connection, *args, **kwargs)

    def _resolve(self, name: str) -> Operation:
        operation = self._adapter.get_operation(name)
        if operation is None:
            logger.warning(f"Failed to find '{name}' operation on the redis adapter")
            operation = missing_operation(name)
            self._adapter.set_operation(name, operation)
        return operation

    def _relocated_config(
        self, connection: Connection, new_host: str, new_port: Union[int, str]
    ) -> Dict[str, Any]:
        old_host, old_port = connection.resolve_endpoint()
        old_config = (
            self._cache.get_configuration_used(old_host, old_port)
            or connection.get_configuration()
        )
        new_config = copy.deepcopy(old_config) if old_config else {}
        new_config["host"] = new_host
        new_config["port"] = new_port
        return new_config

    def _wrap(self, name: str, operation: Operation) -> Operation:
        cache = self._cache
        adapter = self._adapter

        async def redirect_aware(connection: Connection, *args, **kwargs):
            try:
                return await operation(connection, *args, **kwargs)
            except Exception as e:
                logger.debug(f"[{name}] caught error <{e.__class__.__name__}: {e}>")
                if not adapter.is_relocation_signal(e):
                    logger.error(f"[{name}] failed, disconnecting: <{e.__class__.__name__}: {e}>")
                    cache.disconnect_connection(connection)
                    raise

                logger.warning(f"[{name}] redirected: {e}")
                new_host, new_port = adapter.extract_relocation_target(e)
                logger.debug(
                    f"Reacting to MOVED reply by caching a redis connection for new host "
                    f"({new_host}) & port ({new_port})"
                )
                new_connection = cache.set_connection(
                    self._relocated_config(connection, new_host, new_port)
                )

            # a second redirection on the retry is not followed
            try:
                return await operation(new_connection, *args, **kwargs)
            except Exception as e:
                logger.error(
                    f"[{name}] retry on host ({new_host}) & port ({new_port}) failed: "
                    f"<{e.__class__.__name__}: {e}>"
                )
                cache.disconnect_connection(new_connection)
                raise

        redirect_aware.__name__ = f"{name}_redirect_aware"
        return redirect_aware
