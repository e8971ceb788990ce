import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

from redis.backoff import NoBackoff
from redis_client_cache import RedisAdapter

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 6379


class StubAdapter(RedisAdapter):
    """Adapter whose redis clients are AsyncMocks, so nothing touches the network."""

    def __init__(self, ping_side_effect: Optional[Any] = None, connect_retries: int = 0):
        super().__init__(
            default_host=DEFAULT_HOST,
            default_port=DEFAULT_PORT,
            connect_retries=connect_retries,
            backoff=NoBackoff(),
        )
        self.ping_side_effect = ping_side_effect
        self.clients: List[AsyncMock] = []
        self.configs: List[Dict[str, Any]] = []

    def create_client(self, config: Dict[str, Any]) -> AsyncMock:
        client = AsyncMock(name=f"redis-{config['host']}:{config['port']}")
        client.ping.return_value = True
        if self.ping_side_effect is not None:
            client.ping.side_effect = self.ping_side_effect
        self.clients.append(client)
        self.configs.append(dict(config))
        return client


async def settle(rounds: int = 10):
    """Let scheduled handshakes and background disconnects run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
