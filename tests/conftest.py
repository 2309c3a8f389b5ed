"""
Brief: Global pytest configuration enforcing per-test 10s timeout.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import socket
import sys
import threading

import dns.message
import pytest

# Ensure 'src' is on sys.path so 'dnsrelay' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """
    Brief: Provide a FakeClock usable as a cache store timer.

    Inputs:
      - None

    Outputs:
      - FakeClock starting at t=1000
    """
    return FakeClock()


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        # Fallback: no-op on platforms without SIGALRM
        yield


class DNSStub:
    """Local UDP upstream answering each query with responder(query).

    responder receives the decoded dns.message.Message and returns a
    Message (sent as wire), raw bytes, or None (no reply). Every received
    query is recorded in .queries.
    """

    def __init__(self, responder) -> None:
        self.responder = responder
        self.queries = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.host, self.port = self.sock.getsockname()[:2]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                data, peer = self.sock.recvfrom(65535)
            except OSError:
                continue
            query = dns.message.from_wire(data)
            self.queries.append(query)
            reply = self.responder(query)
            if reply is None:
                continue
            if isinstance(reply, dns.message.Message):
                reply = reply.to_wire()
            try:
                self.sock.sendto(reply, peer)
            except OSError:
                pass

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=1.0)
        self.sock.close()


@pytest.fixture
def dns_stub():
    """
    Brief: Factory fixture starting DNSStub upstreams, closed after the test.

    Inputs:
      - None

    Outputs:
      - Callable taking a responder and returning a running DNSStub
    """
    stubs = []

    def make(responder):
        stub = DNSStub(responder)
        stubs.append(stub)
        return stub

    yield make
    for stub in stubs:
        stub.close()
