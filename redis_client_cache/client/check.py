from typing import Any, Tuple, Union

from redis_client_cache.exceptions import ConnectionConfigException, ExceptionsMessage


def is_legal_address(addr: Any) -> bool:
    if not isinstance(addr, str):
        return False

    a = addr.split(":")
    if len(a) != 2:
        return False

    return is_legal_host(a[0]) and is_legal_port(a[1])


def is_legal_host(host: Any) -> bool:
    return isinstance(host, str) and len(host) > 0 and (":" not in host)


def is_legal_port(port: Any) -> bool:
    if isinstance(port, bool):
        return False
    if isinstance(port, (str, int)):
        try:
            int(port)
        except ValueError:
            return False
        else:
            return True
    return False


def is_legal_operation_name(name: Any) -> bool:
    return isinstance(name, str) and len(name) > 0 and not name.startswith("_")


def verify_host_port(host: Any, port: Union[int, str]) -> Tuple[str, Union[int, str]]:
    if not is_legal_host(host):
        raise ConnectionConfigException(message=ExceptionsMessage.HostType)
    if not is_legal_port(port):
        raise ConnectionConfigException(message=ExceptionsMessage.PortType)
    if not 0 <= int(port) <= 65535:
        raise ConnectionConfigException(message=ExceptionsMessage.PortRange % port)
    return host, port
