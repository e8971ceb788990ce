# Copyright (C) 2026 Redis Client Cache Team. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except
# in compliance with the License. You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software distributed under the License
# is distributed on an "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express
# or implied. See the License for the specific language governing permissions and limitations under
# the License.

from .client import __version__
from .client.adapter import FakeRedisAdapter, RedisAdapter, RedisPyAdapter
from .client.cache import (
    ConnectionRecord,
    DeleteResult,
    RedisClientCache,
    configure_redis_client_cache,
    strict_equal,
)
from .client.connection import Connection, ConnectionState, LifecycleEvent, RedisConnection
from .client.endpoint import EndpointKey, EndpointRegistry
from .client.invoker import DEFAULT_OPERATIONS, NON_WRAPPABLE_OPERATIONS, RedirectAwareInvoker
from .client.probe import UsabilityProbe
from .exceptions import (
    AdapterConfigException,
    ConnectionConfigException,
    ErrorCode,
    ExceptionsMessage,
    OperationNotFoundException,
    OperationNotInstalledException,
    ParamError,
    RedisClientCacheException,
)
from .settings import Config

__all__ = [
    "DEFAULT_OPERATIONS",
    "NON_WRAPPABLE_OPERATIONS",
    "AdapterConfigException",
    "Config",
    "Connection",
    "ConnectionConfigException",
    "ConnectionRecord",
    "ConnectionState",
    "DeleteResult",
    "EndpointKey",
    "EndpointRegistry",
    "ErrorCode",
    "ExceptionsMessage",
    "FakeRedisAdapter",
    "LifecycleEvent",
    "OperationNotFoundException",
    "OperationNotInstalledException",
    "ParamError",
    "RedirectAwareInvoker",
    "RedisAdapter",
    "RedisClientCache",
    "RedisClientCacheException",
    "RedisConnection",
    "RedisPyAdapter",
    "UsabilityProbe",
    "__version__",
    "configure_redis_client_cache",
    "strict_equal",
]
