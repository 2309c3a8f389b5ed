import socket
from typing import Optional


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class UDPTimeout(UDPError):
    """No datagram arrived within the timeout."""

    pass


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
    source_ip: Optional[str] = None,
    max_size: int = 65535,
) -> bytes:
    """
    Brief: Perform a single UDP DNS exchange on a fresh socket.

    Inputs:
    - host: upstream resolver host/IP
    - port: upstream UDP port
    - query: wire-format DNS query bytes
    - timeout_ms: socket timeout in milliseconds
    - source_ip: optional source address to bind
    - max_size: receive buffer size

    Outputs:
    - bytes: first datagram received from the upstream

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 9, b'\x00\x01', timeout_ms=50)
        ... except UDPError:
        ...     pass
    """
    family = socket.AF_INET6 if ":" in str(host) else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_DGRAM) as s:
            if source_ip:
                s.bind((source_ip, 0))
            s.settimeout(timeout_ms / 1000.0)
            s.connect((host, int(port)))
            s.send(query)
            return s.recv(max_size)
    except socket.timeout as e:
        raise UDPTimeout(f"UDP timeout after {timeout_ms}ms") from e
    except OSError as e:
        raise UDPError(f"UDP error: {e}") from e
