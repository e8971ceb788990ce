"""Endpoint identities for the redis client cache.

Every cached connection is filed under the composite ``host:port`` string of its
endpoint. The registry interns one ``EndpointKey`` per composite string for as long
as that endpoint is cached, so repeated lookups for the same endpoint hand back the
very same key object.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Union


def make_key(host: str, port: Union[int, str]) -> str:
    """Return the composite key ``host:port`` used by every cache map."""
    return f"{host}:{port}"


@dataclass(frozen=True)
class EndpointKey:
    """Identity of one redis server endpoint.

    Attributes:
        host: Host name or IP address, as given by the caller
        port: Port, as given by the caller (int or str)
    """

    host: str
    port: Union[int, str]

    @property
    def key(self) -> str:
        return make_key(self.host, self.port)

    def __str__(self) -> str:
        return self.key


class EndpointRegistry:
    """Interns ``EndpointKey`` instances by their composite ``host:port`` string."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: Dict[str, EndpointKey] = {}

    def get(self, host: str, port: Union[int, str]) -> Optional[EndpointKey]:
        """Return the registered key for host & port, or None if none is registered."""
        with self._lock:
            return self._keys.get(make_key(host, port))

    def get_or_create(self, host: str, port: Union[int, str]) -> EndpointKey:
        """Return the registered key for host & port, minting one if necessary."""
        composite = make_key(host, port)
        with self._lock:
            key = self._keys.get(composite)
            if key is None:
                key = EndpointKey(host=host, port=port)
                self._keys[composite] = key
            return key

    def remove(self, key: EndpointKey) -> bool:
        """Forget the given key. Returns True if it was registered."""
        with self._lock:
            if self._keys.get(key.key) is key:
                del self._keys[key.key]
                return True
            return False

    def keys(self) -> List[EndpointKey]:
        """Snapshot of the currently registered keys, in registration order."""
        with self._lock:
            return list(self._keys.values())

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()

    def __contains__(self, key: EndpointKey) -> bool:
        with self._lock:
            return self._keys.get(key.key) is key

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
