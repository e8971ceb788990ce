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

from enum import IntEnum


class ErrorCode(IntEnum):
    SUCCESS = 0
    UNEXPECTED_ERROR = 1
    ILLEGAL_PARAM = 2
    ILLEGAL_ADAPTER = 3
    ILLEGAL_CONNECTION_CONFIG = 4
    OPERATION_NOT_FOUND = 100
    OPERATION_NOT_INSTALLED = 101


class RedisClientCacheException(Exception):
    def __init__(
        self,
        code: int = ErrorCode.UNEXPECTED_ERROR,
        message: str = "",
    ) -> None:
        super().__init__()
        self._code = code
        self._message = message

    @property
    def code(self):
        return self._code

    @property
    def message(self):
        return self._message

    def __str__(self) -> str:
        return f"<{type(self).__name__}: (code={self.code}, message={self.message})>"


class ParamError(RedisClientCacheException):
    """Raise when params are incorrect"""

    def __init__(self, message: str = "") -> None:
        super().__init__(code=ErrorCode.ILLEGAL_PARAM, message=message)


class AdapterConfigException(RedisClientCacheException):
    """Raise when a cache is built without a usable redis adapter"""

    def __init__(self, message: str = "") -> None:
        super().__init__(code=ErrorCode.ILLEGAL_ADAPTER, message=message)


class ConnectionConfigException(RedisClientCacheException):
    """Raise when configs of connection are invalid"""

    def __init__(self, message: str = "") -> None:
        super().__init__(code=ErrorCode.ILLEGAL_CONNECTION_CONFIG, message=message)


class OperationNotFoundException(RedisClientCacheException):
    """Raise when a named operation is missing from the redis adapter"""

    def __init__(self, message: str = "") -> None:
        super().__init__(code=ErrorCode.OPERATION_NOT_FOUND, message=message)


class OperationNotInstalledException(RedisClientCacheException):
    """Raise when invoking an operation that was never installed"""

    def __init__(self, message: str = "") -> None:
        super().__init__(code=ErrorCode.OPERATION_NOT_INSTALLED, message=message)


class ExceptionsMessage:
    NoAdapter = "Cannot construct a RedisClientCache instance without a valid redis adapter."
    HostType = "Type of 'host' must be a non-empty str without ':'."
    PortType = "Type of 'port' must be str or int."
    PortRange = "port number %s out of range, valid range [0, 65535]"
    ConfigType = "Connection configuration must be a dict, but %r is given."
    OperationName = "Operation name should be a non-empty string, but %r is given."
    OperationMissing = "Missing %r operation on the redis adapter."
    OperationNotInstalled = "Operation %r is not installed, call install_operation(%r) first."
    NotRelocation = "Error is not a MOVED redirection: %s"
