"""Connection contract observed by the redis client cache.

A ``Connection`` is a live, stateful handle to one redis server. The cache never
tracks fine-grained states itself: it only asks ``is_closing()`` and listens to the
lifecycle events a connection emits while it moves through

    CONSTRUCTING -> CONNECTING -> READY <-> RECONNECTING -> CLOSING -> CLOSED
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from redis_client_cache.settings import Config

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    CONSTRUCTING = "constructing"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


class LifecycleEvent(str, Enum):
    CONNECT = "connect"
    READY = "ready"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLIENT_ERROR = "client_error"
    END = "end"


CLOSING_STATES = (ConnectionState.CLOSING, ConnectionState.CLOSED)


class Connection(ABC):
    """Base class for connections handed out by a redis adapter.

    Subclasses implement the handshake and the close; this class owns the state,
    the configuration the connection was built from and the lifecycle listeners.
    """

    def __init__(self, config: Dict[str, Any]):
        self._config = copy.deepcopy(config)
        self._state = ConnectionState.CONSTRUCTING
        self._listeners: Dict[LifecycleEvent, List[Callable]] = {
            event: [] for event in LifecycleEvent
        }
        self._open_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_closing(self) -> bool:
        return self._state in CLOSING_STATES

    def resolve_endpoint(self) -> Tuple[str, Union[int, str]]:
        return self._config.get("host"), self._config.get("port")

    def get_configuration(self) -> Dict[str, Any]:
        """Return a copy of the options this connection was constructed with."""
        return copy.deepcopy(self._config)

    def add_listener(self, event: Union[LifecycleEvent, str], callback: Callable) -> None:
        self._listeners[LifecycleEvent(event)].append(callback)

    def add_lifecycle_listeners(
        self,
        on_connect: Callable[[], Any],
        on_ready: Callable[[], Any],
        on_reconnecting: Callable[[Exception], Any],
        on_error: Callable[[Exception], Any],
        on_client_error: Callable[[Exception], Any],
        on_closed: Callable[[], Any],
    ) -> None:
        self.add_listener(LifecycleEvent.CONNECT, on_connect)
        self.add_listener(LifecycleEvent.READY, on_ready)
        self.add_listener(LifecycleEvent.RECONNECTING, on_reconnecting)
        self.add_listener(LifecycleEvent.ERROR, on_error)
        self.add_listener(LifecycleEvent.CLIENT_ERROR, on_client_error)
        self.add_listener(LifecycleEvent.END, on_closed)

    def emit(self, event: LifecycleEvent, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.warning(f"Lifecycle listener for '{event.value}' failed", exc_info=True)

    def mark_reconnecting(self, error: Exception) -> None:
        if self.is_closing():
            return
        self._state = ConnectionState.RECONNECTING
        self.emit(LifecycleEvent.RECONNECTING, error)

    def open(self) -> Optional[asyncio.Task]:
        """Start the handshake in the background.

        Returns the handshake task, or None when no event loop is running, in which
        case the underlying client connects lazily on its first command.
        """
        if self._state is not ConnectionState.CONSTRUCTING:
            return self._open_task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._state = ConnectionState.CONNECTING
        self._open_task = loop.create_task(self._open())
        return self._open_task

    async def _open(self) -> None:
        try:
            await self._handshake()
        except Exception as e:
            if not self.is_closing():
                self.emit(LifecycleEvent.ERROR, e)
            return

        if self.is_closing():
            return
        self.emit(LifecycleEvent.CONNECT)
        self._state = ConnectionState.READY
        self.emit(LifecycleEvent.READY)

    def disconnect(self) -> Optional[Awaitable[None]]:
        """Mark the connection as closing and return the close coroutine.

        Returns None if the connection is already closing. The caller owns the
        returned coroutine and must await or schedule it.
        """
        if self.is_closing():
            return None
        self._state = ConnectionState.CLOSING
        task = self._open_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return self._close_and_emit()

    async def _close_and_emit(self) -> None:
        try:
            await self._close()
        finally:
            self._state = ConnectionState.CLOSED
            self.emit(LifecycleEvent.END)

    @abstractmethod
    async def _handshake(self) -> None:
        """Establish the connection, raising if the server cannot be reached."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the underlying transport."""


class RedisConnection(Connection):
    """Connection wrapping a ``redis.asyncio.Redis`` compatible client.

    The handshake is a ``PING`` driven by redis-py's ``Retry``; every failed attempt
    that will be retried emits ``reconnecting``.
    """

    def __init__(
        self,
        client: Any,
        config: Dict[str, Any],
        retries: Optional[int] = None,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        super().__init__(config)
        self._client = client
        self._retries = Config.CONNECT_RETRIES if retries is None else retries
        if backoff is None:
            backoff = ExponentialBackoff(
                cap=Config.CONNECT_BACKOFF_CAP, base=Config.CONNECT_BACKOFF_BASE
            )
        self._retry = Retry(backoff, self._retries)

    @property
    def client(self) -> Any:
        return self._client

    async def _handshake(self) -> None:
        failures = 0

        async def on_failure(error: Exception) -> None:
            nonlocal failures
            failures += 1
            if failures <= self._retries:
                self.mark_reconnecting(error)

        await self._retry.call_with_retry(self._client.ping, on_failure)

    async def _close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        host, port = self.resolve_endpoint()
        return f"<RedisConnection host={host} port={port} state={self._state.value}>"
