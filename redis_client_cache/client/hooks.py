import logging
import time
from typing import TYPE_CHECKING, Optional

from redis_client_cache.client.connection import Connection

if TYPE_CHECKING:
    from redis_client_cache.client.cache import RedisClientCache

logger = logging.getLogger(__name__)


def attach_lifecycle_hooks(
    cache: "RedisClientCache",
    connection: Connection,
    started_at: Optional[float] = None,
) -> None:
    """Attach the standard lifecycle callbacks to a newly created connection.

    An ``error`` is treated as fatal: the connection is evicted (if the cache still
    holds it) and disconnected.
    """
    host, port = connection.resolve_endpoint()
    start = time.time() if started_at is None else started_at

    def took() -> str:
        return f"took {int((time.time() - start) * 1000)} ms"

    def on_connect():
        logger.debug(f"Redis connection to host ({host}) & port ({port}) has CONNECTED - {took()}")

    def on_ready():
        logger.debug(f"Redis connection to host ({host}) & port ({port}) is READY - {took()}")

    def on_reconnecting(error: Optional[Exception] = None):
        logger.debug(f"Redis connection to host ({host}) & port ({port}) is RECONNECTING ({error})")

    def on_error(error: Exception):
        logger.error(f"Redis connection to host ({host}) & port ({port}) hit error: {error!r}")
        cache.discard(connection)
        cache.disconnect_connection(connection)

    def on_client_error(error: Exception):
        logger.error(
            f"Redis connection to host ({host}) & port ({port}) hit client error: {error!r}"
        )

    def on_closed():
        logger.debug(f"Redis connection to host ({host}) & port ({port}) has CLOSED")

    connection.add_lifecycle_listeners(
        on_connect, on_ready, on_reconnecting, on_error, on_client_error, on_closed
    )
