"""
Brief: Tests for dnsrelay.upstream.UpstreamResolver against local stubs.

Inputs:
  - None

Outputs:
  - None
"""

import dns.message
import dns.rcode
import dns.rrset
import pytest

import dnsrelay.upstream as upstream_mod
from dnsrelay.transports.udp import UDPError
from dnsrelay.upstream import (
    UpstreamMalformedResponse,
    UpstreamNetworkError,
    UpstreamResolver,
    UpstreamTimeout,
    _set_message_id,
)


def _answer(query, ttl=300, addr="93.184.216.34"):
    r = dns.message.make_response(query)
    r.answer.append(dns.rrset.from_text(query.question[0].name, ttl, "IN", "A", addr))
    return r


def test_forward_returns_decoded_response(dns_stub):
    """
    Brief: forward() relays the query and returns the upstream answer.

    Inputs:
      - dns_stub: local UDP upstream

    Outputs:
      - None
    """
    stub = dns_stub(_answer)
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=1000)
    query = dns.message.make_query("example.test.", "A", id=4242)

    outcome = up.forward(query)

    assert outcome.ok
    assert outcome.reason == "ok"
    assert outcome.response.answer[0][0].to_text() == "93.184.216.34"
    assert len(stub.queries) == 1
    # The client's query object is left untouched.
    assert query.id == 4242


def test_forward_uses_fresh_upstream_id(dns_stub, monkeypatch):
    stub = dns_stub(_answer)
    monkeypatch.setattr(upstream_mod.dns.entropy, "random_16", lambda: 777)
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=1000)
    response = up.forward_or_raise(dns.message.make_query("example.test.", "A", id=1))
    assert stub.queries[0].id == 777
    assert response.id == 777


def test_forward_times_out_when_upstream_is_silent(dns_stub):
    """
    Brief: No reply within timeout_ms yields reason 'timeout'.

    Inputs:
      - dns_stub: upstream that never answers

    Outputs:
      - None
    """
    stub = dns_stub(lambda q: None)
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=100)
    outcome = up.forward(dns.message.make_query("example.test.", "A"))
    assert not outcome.ok
    assert outcome.reason == "timeout"
    assert outcome.response is None
    assert isinstance(outcome.error, UpstreamTimeout)


def test_forward_reports_malformed_reply(dns_stub):
    stub = dns_stub(lambda q: b"\x00\x01garbage")
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=500)
    outcome = up.forward(dns.message.make_query("example.test.", "A"))
    assert outcome.reason == "malformed"
    with pytest.raises(UpstreamMalformedResponse):
        up.forward_or_raise(dns.message.make_query("example.test.", "A"))


def test_forward_rejects_mismatched_id(dns_stub):
    """
    Brief: A reply carrying another transaction ID is treated as malformed.

    Inputs:
      - dns_stub: upstream replying with a wrong ID

    Outputs:
      - None
    """

    def wrong_id(query):
        r = _answer(query)
        r.id = (query.id + 1) & 0xFFFF
        return r

    stub = dns_stub(wrong_id)
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=500)
    outcome = up.forward(dns.message.make_query("example.test.", "A"))
    assert outcome.reason == "malformed"


def test_forward_rejects_reply_without_qr(dns_stub):
    def echo_query(query):
        return query

    stub = dns_stub(echo_query)
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=500)
    assert up.forward(dns.message.make_query("example.test.", "A")).reason == "malformed"


def test_forward_relays_non_success_rcode(dns_stub):
    def nxdomain(query):
        r = dns.message.make_response(query)
        r.set_rcode(dns.rcode.NXDOMAIN)
        return r

    stub = dns_stub(nxdomain)
    up = UpstreamResolver(stub.host, stub.port, timeout_ms=500)
    outcome = up.forward(dns.message.make_query("missing.test.", "A"))
    assert outcome.ok
    assert outcome.response.rcode() == dns.rcode.NXDOMAIN


def test_forward_maps_socket_errors_to_network_error(monkeypatch):
    def boom(*_a, **_kw):
        raise UDPError("UDP error: unreachable")

    monkeypatch.setattr(upstream_mod, "udp_query", boom)
    up = UpstreamResolver("192.0.2.53", 53)
    outcome = up.forward(dns.message.make_query("example.test.", "A"))
    assert outcome.reason == "network_error"
    assert isinstance(outcome.error, UpstreamNetworkError)


def test_tcp_transport_uses_tcp_query(monkeypatch):
    """
    Brief: transport='tcp' sends the exchange through tcp_query.

    Inputs:
      - monkeypatch: replaces tcp_query with an in-process responder

    Outputs:
      - None
    """
    calls = []

    def fake_tcp_query(host, port, wire, *, connect_timeout_ms, read_timeout_ms):
        calls.append((host, port, connect_timeout_ms, read_timeout_ms))
        return _answer(dns.message.from_wire(wire)).to_wire()

    monkeypatch.setattr(upstream_mod, "tcp_query", fake_tcp_query)
    up = UpstreamResolver("192.0.2.53", 5300, timeout_ms=750, transport="TCP")
    outcome = up.forward(dns.message.make_query("example.test.", "A"))
    assert outcome.ok
    assert calls == [("192.0.2.53", 5300, 750, 750)]


@pytest.mark.parametrize(
    "kwargs",
    [{"transport": "doh"}, {"timeout_ms": 0}],
)
def test_constructor_rejects_bad_options(kwargs):
    with pytest.raises(ValueError):
        UpstreamResolver("127.0.0.1", 53, **kwargs)


def test_set_message_id_rewrites_header():
    wire = dns.message.make_query("example.test.", "A", id=1).to_wire()
    assert dns.message.from_wire(_set_message_id(wire, 0xBEEF)).id == 0xBEEF
    assert _set_message_id(b"\x01", 5) == b"\x01"


def test_address_property():
    assert UpstreamResolver("127.0.0.1", 5300).address == "127.0.0.1:5300"
