import logging
import socketserver
import threading
from typing import Optional, Tuple

import dns.exception
import dns.flags
import dns.message
import dns.rcode

from ..resolver import ResolutionEngine, ResolutionFailed

logger = logging.getLogger("dnsrelay.server")

FAILURE_POLICIES = ("drop", "servfail")

# Classic DNS-over-UDP payload limit when the client does not advertise EDNS.
MIN_UDP_PAYLOAD = 512


def _encode_response(
    response: dns.message.Message, query: dns.message.Message
) -> bytes:
    """Encode response within the client's UDP payload size.

    Inputs:
      - response: Message to encode.
      - query: Original query (its EDNS payload bounds the reply size).
    Outputs:
      - bytes: wire response; when it does not fit, the answer sections are
        emptied and TC is set so the client can retry over TCP.
    """
    max_size = MIN_UDP_PAYLOAD
    if query.edns >= 0:
        max_size = max(MIN_UDP_PAYLOAD, int(query.payload))
    try:
        return response.to_wire(max_size=max_size)
    except dns.exception.TooBig:
        logger.debug(
            "Response for id=%d exceeds %d bytes; sending truncated reply",
            query.id,
            max_size,
        )
        response.answer = []
        response.authority = []
        response.additional = []
        response.flags |= dns.flags.TC
        return response.to_wire(max_size=max_size)


def _error_response(
    query: dns.message.Message, rcode: dns.rcode.Rcode, recursion_available: bool
) -> bytes:
    r = dns.message.make_response(query, recursion_available=recursion_available)
    r.set_rcode(rcode)
    return _encode_response(r, query)


def process_datagram(
    engine: ResolutionEngine,
    data: bytes,
    client: str = "-",
    *,
    failure_policy: str = "drop",
) -> Optional[bytes]:
    """Decode one datagram, resolve it, and encode the reply.

    Inputs:
      - engine: ResolutionEngine answering decoded queries.
      - data: Raw datagram bytes.
      - client: Client description for log messages.
      - failure_policy: 'drop' (send nothing when the upstream fails) or
        'servfail' (send a SERVFAIL carrying the request ID).
    Outputs:
      - bytes to send back, or None when the datagram is dropped.

    Undecodable datagrams and datagrams that are themselves responses never
    reach the engine. A query without a question gets FORMERR.

    Example:
      >>> # wire = process_datagram(engine, query_bytes, "127.0.0.1")
    """
    try:
        query = dns.message.from_wire(data)
    except (dns.exception.DNSException, ValueError) as exc:
        logger.debug("Dropping undecodable datagram from %s: %s", client, exc)
        return None

    if query.flags & dns.flags.QR:
        logger.debug("Dropping response-flagged datagram from %s", client)
        return None

    if not query.question:
        logger.debug("FORMERR for question-less query id=%d from %s", query.id, client)
        return _error_response(query, dns.rcode.FORMERR, engine.recursion_available)

    try:
        response = engine.resolve(query)
    except ResolutionFailed as exc:
        if failure_policy == "servfail":
            logger.warning("%s; answering %s with SERVFAIL", exc, client)
            return _error_response(
                query, dns.rcode.SERVFAIL, engine.recursion_available
            )
        logger.warning("%s; dropping query from %s", exc, client)
        return None

    logger.debug(
        "Answered %s id=%d rcode=%s answers=%d",
        client,
        query.id,
        dns.rcode.to_text(response.rcode()),
        sum(len(rrset) for rrset in response.answer),
    )
    return _encode_response(response, query)


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests.
    This class is instantiated for each incoming datagram, on its own thread.

    Example use:
        This handler is used internally by the DNSServer and is not
        typically instantiated directly by users.
    """

    server: "_RelayUDPServer"

    def handle(self) -> None:
        data, sock = self.request
        client = f"{self.client_address[0]}:{self.client_address[1]}"
        try:
            wire = process_datagram(
                self.server.engine,
                data,
                client,
                failure_policy=self.server.failure_policy,
            )
        except Exception:
            logger.exception("Unhandled error while processing query from %s", client)
            return
        if wire:
            sock.sendto(wire, self.client_address)


class _RelayUDPServer(socketserver.ThreadingUDPServer):
    daemon_threads = True
    allow_reuse_address = True
    # Large enough for EDNS queries.
    max_packet_size = 65535

    def __init__(
        self,
        server_address: Tuple[str, int],
        engine: ResolutionEngine,
        failure_policy: str,
    ) -> None:
        self.engine = engine
        self.failure_policy = failure_policy
        super().__init__(server_address, DNSUDPHandler)


class DNSServer:
    """A UDP DNS server wrapper around one ResolutionEngine.

    Example use:
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 0, engine)  # doctest: +SKIP
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()  # doctest: +SKIP
        >>> server.stop()  # doctest: +SKIP
    """

    def __init__(
        self,
        host: str,
        port: int,
        engine: ResolutionEngine,
        *,
        failure_policy: str = "drop",
    ) -> None:
        """Bind the UDP socket.

        Inputs:
            host: The host to listen on.
            port: The port to listen on (0 picks a free port).
            engine: ResolutionEngine answering queries.
            failure_policy: 'drop' or 'servfail'.
        """
        policy = str(failure_policy or "drop").lower()
        if policy not in FAILURE_POLICIES:
            raise ValueError(
                f"failure_policy must be one of {FAILURE_POLICIES}, got {failure_policy!r}"
            )
        try:
            self.server = _RelayUDPServer((host, int(port)), engine, policy)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise

        self._serving = threading.Event()
        logger.debug("DNS UDP server bound to %s:%d", *self.server_address)

    @property
    def server_address(self) -> Tuple[str, int]:
        host, port = self.server.server_address[:2]
        return str(host), int(port)

    def serve_forever(self) -> None:
        """Start the UDP server loop and listen for requests.

        Inputs:
          - None
        Outputs:
          - None; runs until shutdown is requested or KeyboardInterrupt occurs.
        """
        self._serving.set()
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            pass
        finally:
            self._serving.clear()

    def stop(self) -> None:
        """Request graceful shutdown and close the underlying UDP socket.

        Inputs:
          - None
        Outputs:
          - None; best-effort shutdown suitable for use from signal handlers.
        """
        try:
            # shutdown() blocks forever unless serve_forever() is running.
            if self._serving.is_set():
                self.server.shutdown()
        except Exception:
            logger.exception("Error while shutting down UDP server")
        try:
            self.server.server_close()
        except Exception:
            logger.exception("Error while closing UDP server socket")
