"""Upstream resolver client.

Brief:
  Sends exactly one query to the single configured upstream resolver and
  classifies what came back. Retries, failover and connection reuse are not
  done here; each call is one fresh socket exchange.

Inputs:
  - dnspython query messages

Outputs:
  - UpstreamOutcome values (or UpstreamError exceptions via forward_or_raise)
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional

import dns.entropy
import dns.exception
import dns.flags
import dns.message

from .transports.tcp import TCPError, TCPTimeout, tcp_query
from .transports.udp import UDPError, UDPTimeout, udp_query

logger = logging.getLogger("dnsrelay.upstream")

TRANSPORTS = ("udp", "tcp")


class UpstreamError(Exception):
    """
    Brief: Base class for a failed upstream exchange.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    reason = "network_error"


class UpstreamTimeout(UpstreamError):
    reason = "timeout"


class UpstreamNetworkError(UpstreamError):
    reason = "network_error"


class UpstreamMalformedResponse(UpstreamError):
    reason = "malformed"


class UpstreamOutcome(NamedTuple):
    """Result of one forward(): a decoded response, or a failure reason.

    reason is 'ok', 'timeout', 'network_error' or 'malformed'.
    """

    response: Optional[dns.message.Message]
    reason: str
    error: Optional[UpstreamError] = None

    @property
    def ok(self) -> bool:
        return self.response is not None and self.reason == "ok"


def _set_message_id(wire: bytes, msg_id: int) -> bytes:
    """Brief: Rewrite the 16-bit DNS ID in the first two bytes of a message.

    Inputs:
      - wire: DNS message bytes.
      - msg_id: ID to write.

    Outputs:
      - bytes: message with the new ID (unchanged when shorter than 2 bytes).
    """

    if len(wire) < 2:
        return bytes(wire)
    return int(msg_id & 0xFFFF).to_bytes(2, "big") + bytes(wire[2:])


class UpstreamResolver:
    """Client for one fixed upstream resolver.

    Example use:
        >>> up = UpstreamResolver("127.0.0.1", 53, timeout_ms=1500)
        >>> up.address
        '127.0.0.1:53'
    """

    def __init__(
        self,
        host: str,
        port: int = 53,
        *,
        timeout_ms: int = 2000,
        transport: str = "udp",
    ) -> None:
        """Initialize the client.

        Inputs:
            host: Upstream IP address or hostname.
            port: Upstream port.
            timeout_ms: Bound on one exchange, in milliseconds.
            transport: "udp" or "tcp".
        """
        transport = str(transport or "udp").lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"transport must be one of {TRANSPORTS}, got {transport!r}")
        if int(timeout_ms) <= 0:
            raise ValueError("timeout_ms must be positive")
        self.host = str(host)
        self.port = int(port)
        self.timeout_ms = int(timeout_ms)
        self.transport = transport

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def _exchange(self, wire: bytes) -> bytes:
        try:
            if self.transport == "tcp":
                return tcp_query(
                    self.host,
                    self.port,
                    wire,
                    connect_timeout_ms=self.timeout_ms,
                    read_timeout_ms=self.timeout_ms,
                )
            return udp_query(self.host, self.port, wire, timeout_ms=self.timeout_ms)
        except (UDPTimeout, TCPTimeout) as exc:
            raise UpstreamTimeout(
                f"no reply from {self.address} within {self.timeout_ms}ms"
            ) from exc
        except (UDPError, TCPError) as exc:
            raise UpstreamNetworkError(f"{self.address}: {exc}") from exc

    def forward_or_raise(self, query: dns.message.Message) -> dns.message.Message:
        """Brief: Forward a query and return the decoded response.

        Inputs:
          - query: Query message; it is not mutated.

        Outputs:
          - dns.message.Message: upstream response (carrying the upstream-leg ID,
            not the caller's).

        Raises:
          - UpstreamTimeout, UpstreamNetworkError, UpstreamMalformedResponse.
        """

        upstream_id = dns.entropy.random_16()
        wire = _set_message_id(query.to_wire(), upstream_id)
        data = self._exchange(wire)

        try:
            response = dns.message.from_wire(data)
        except (dns.exception.DNSException, ValueError) as exc:
            raise UpstreamMalformedResponse(
                f"undecodable reply from {self.address}: {exc}"
            ) from exc

        if response.id != upstream_id or not (response.flags & dns.flags.QR):
            raise UpstreamMalformedResponse(
                f"reply from {self.address} does not answer the query "
                f"(id={response.id}, expected {upstream_id})"
            )
        return response

    def forward(self, query: dns.message.Message) -> UpstreamOutcome:
        """Brief: Forward one query and classify the result.

        Inputs:
          - query: Query message.

        Outputs:
          - UpstreamOutcome: response with reason 'ok', or response None with
            reason 'timeout', 'network_error' or 'malformed'.
        """

        try:
            response = self.forward_or_raise(query)
        except UpstreamError as exc:
            logger.debug("Upstream %s failed (%s): %s", self.address, exc.reason, exc)
            return UpstreamOutcome(None, exc.reason, exc)
        return UpstreamOutcome(response, "ok")
