"""
Brief: Unit tests for the DNS-over-TCP transport with a length-framed stub.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest

from dnsrelay.transports.tcp import TCPError, TCPTimeout, tcp_query


class _TCPStub:
    """Accepts one connection at a time and runs handler(conn)."""

    def __init__(self, handler):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(4)
        self.sock.settimeout(0.2)
        self.addr = self.sock.getsockname()
        self.handler = handler
        self._stop = threading.Event()
        self.thread = threading.Thread(target=self._loop, daemon=True)
        self.thread.start()

    def _loop(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except OSError:
                continue
            with conn:
                try:
                    self.handler(conn)
                except OSError:
                    pass

    def close(self):
        self._stop.set()
        self.thread.join(timeout=1.0)
        self.sock.close()


def _read_frame(conn):
    hdr = conn.recv(2)
    n = int.from_bytes(hdr, "big")
    buf = b""
    while len(buf) < n:
        chunk = conn.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def _echo(conn):
    body = _read_frame(conn)
    conn.sendall(len(body).to_bytes(2, "big") + body)


def _short(conn):
    _read_frame(conn)
    conn.sendall(b"\x00\x10abc")


def _silent(conn):
    _read_frame(conn)
    threading.Event().wait(1.0)


@pytest.fixture
def stub_factory():
    stubs = []

    def make(handler):
        s = _TCPStub(handler)
        stubs.append(s)
        return s

    yield make
    for s in stubs:
        s.close()


def test_tcp_query_roundtrip(stub_factory):
    """
    Brief: tcp_query frames the query and returns the framed reply body.

    Inputs:
      - stub_factory: creates an echoing TCP stub

    Outputs:
      - None
    """
    stub = stub_factory(_echo)
    q = b"\xab\xcd" + b"x" * 40
    assert tcp_query(stub.addr[0], stub.addr[1], q, read_timeout_ms=1000) == q


def test_tcp_query_short_body_is_error(stub_factory):
    stub = stub_factory(_short)
    with pytest.raises(TCPError):
        tcp_query(stub.addr[0], stub.addr[1], b"\x00\x01", read_timeout_ms=1000)


def test_tcp_query_read_timeout(stub_factory):
    stub = stub_factory(_silent)
    with pytest.raises(TCPTimeout):
        tcp_query(stub.addr[0], stub.addr[1], b"\x00\x01", read_timeout_ms=100)


def test_tcp_query_connection_refused():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    with pytest.raises(TCPError):
        tcp_query("127.0.0.1", port, b"\x00\x01", connect_timeout_ms=200)
