import logging

from redis_client_cache.client.connection import Connection
from redis_client_cache.client.invoker import RedirectAwareInvoker

logger = logging.getLogger(__name__)

PROBE_OPERATION = "ping"


class UsabilityProbe:
    """Checks a connection empirically with a ``PING`` round trip."""

    def __init__(self, invoker: RedirectAwareInvoker):
        self._invoker = invoker

    async def is_usable(self, connection: Connection) -> bool:
        """Return True if a ping through the connection succeeds.

        A closing connection is never probed. Failures are logged, never raised.
        """
        host, port = connection.resolve_endpoint()

        if connection.is_closing():
            logger.debug(f"Cannot ping CLOSING redis connection for host ({host}) & port ({port})")
            return False

        if not self._invoker.is_installed(PROBE_OPERATION):
            self._invoker.install(PROBE_OPERATION)

        try:
            pong = await self._invoker.invoke(connection, PROBE_OPERATION)
        except Exception:
            logger.error(
                f"Ping failed for redis connection for host ({host}) & port ({port})",
                exc_info=True,
            )
            return False

        logger.debug(f"Ping passed for redis connection for host ({host}) & port ({port}) - {pong!r}")
        return True
