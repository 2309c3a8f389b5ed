"""
Brief: Tests for dnsrelay.resolver.ResolutionEngine with a counting upstream.

Inputs:
  - None

Outputs:
  - None
"""

import json

import dns.flags
import dns.message
import dns.rcode
import dns.rrset
import pytest

from dnsrelay.cache import TTLCacheStore
from dnsrelay.cache.none import NullCacheStore
from dnsrelay.resolver import ResolutionEngine, ResolutionFailed
from dnsrelay.upstream import UpstreamOutcome, UpstreamTimeout


class CountingUpstream:
    """Upstream test double: answers with responder(query) and counts calls."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def forward(self, query):
        self.calls.append(query)
        result = self.responder(query)
        if isinstance(result, UpstreamOutcome):
            return result
        return UpstreamOutcome(result, "ok")


def _a_answer(addr="93.184.216.34", ttl=300):
    def responder(query):
        r = dns.message.make_response(query)
        r.answer.append(
            dns.rrset.from_text(query.question[0].name, ttl, "IN", "A", addr)
        )
        return r

    return responder


def _timeout(query):
    return UpstreamOutcome(None, "timeout", UpstreamTimeout("no reply"))


def _engine(responder, clock=None, **kwargs):
    store = TTLCacheStore(timer=clock) if clock is not None else TTLCacheStore()
    upstream = CountingUpstream(responder)
    return ResolutionEngine(store, upstream, **kwargs), upstream, store


def test_end_to_end_second_query_served_from_cache():
    """
    Brief: A repeated question is answered from cache without a second upstream call.

    Inputs:
      - Upstream answering example.test A 93.184.216.34 TTL 300

    Outputs:
      - None: Asserts ID, answer, rcode and a single upstream call
    """
    engine, upstream, _ = _engine(_a_answer())

    first = engine.resolve(dns.message.make_query("example.test.", "A", id=100))
    second = engine.resolve(dns.message.make_query("example.test.", "A", id=200))

    for resp, qid in ((first, 100), (second, 200)):
        assert resp.id == qid
        assert resp.rcode() == dns.rcode.NOERROR
        assert resp.flags & dns.flags.QR
        assert len(resp.answer) == 1
        assert resp.answer[0][0].to_text() == "93.184.216.34"
        assert resp.answer[0].ttl == 300
    assert len(upstream.calls) == 1
    assert engine.stats()["cache_hits"] == 1
    assert engine.stats()["cache_misses"] == 1


def test_cache_ttl_is_minimum_answer_ttl(clock):
    """
    Brief: Answers with TTLs 30, 10 and 60 are cached for 10 seconds.

    Inputs:
      - clock: FakeClock fixture driving the cache store

    Outputs:
      - None
    """

    def responder(query):
        r = dns.message.make_response(query)
        r.answer.append(dns.rrset.from_text("example.test.", 30, "IN", "CNAME", "a.example.test."))
        r.answer.append(dns.rrset.from_text("a.example.test.", 10, "IN", "CNAME", "b.example.test."))
        r.answer.append(dns.rrset.from_text("b.example.test.", 60, "IN", "A", "192.0.2.7"))
        return r

    engine, upstream, store = _engine(responder, clock=clock)
    resp = engine.resolve(dns.message.make_query("example.test.", "A"))
    assert [rr.ttl for rr in resp.answer] == [30, 10, 60]

    clock.advance(9)
    engine.resolve(dns.message.make_query("example.test.", "A"))
    assert len(upstream.calls) == 1

    clock.advance(2)
    engine.resolve(dns.message.make_query("example.test.", "A"))
    assert len(upstream.calls) == 2


def test_upstream_failure_is_not_cached():
    """
    Brief: A failed exchange raises ResolutionFailed and leaves the cache empty.

    Inputs:
      - Upstream that times out once, then answers

    Outputs:
      - None
    """
    outcomes = [_timeout, _a_answer()]

    def responder(query):
        return outcomes.pop(0)(query)

    engine, upstream, store = _engine(responder)
    with pytest.raises(ResolutionFailed) as excinfo:
        engine.resolve(dns.message.make_query("example.test.", "A"))
    assert excinfo.value.reason == "timeout"
    assert excinfo.value.qname == "example.test."
    assert store.get("example.test.") == (None, False)

    resp = engine.resolve(dns.message.make_query("example.test.", "A"))
    assert resp.answer[0][0].to_text() == "93.184.216.34"
    assert len(upstream.calls) == 2
    assert engine.stats()["upstream_failures"] == 1


def test_non_success_rcode_is_relayed_not_cached():
    def nxdomain(query):
        r = dns.message.make_response(query)
        r.set_rcode(dns.rcode.NXDOMAIN)
        return r

    engine, upstream, store = _engine(nxdomain)
    for qid in (1, 2):
        resp = engine.resolve(dns.message.make_query("missing.test.", "A", id=qid))
        assert resp.rcode() == dns.rcode.NXDOMAIN
        assert resp.id == qid
    assert len(upstream.calls) == 2
    assert len(store) == 0


def test_empty_noerror_cached_with_default_ttl(clock):
    """
    Brief: An empty NOERROR answer is cached for default_ttl seconds.

    Inputs:
      - clock: FakeClock fixture

    Outputs:
      - None
    """

    def empty(query):
        return dns.message.make_response(query)

    engine, upstream, _ = _engine(empty, clock=clock, default_ttl=20)
    engine.resolve(dns.message.make_query("nodata.test.", "AAAA"))
    clock.advance(19)
    resp = engine.resolve(dns.message.make_query("nodata.test.", "AAAA"))
    assert resp.answer == []
    assert len(upstream.calls) == 1
    clock.advance(2)
    engine.resolve(dns.message.make_query("nodata.test.", "AAAA"))
    assert len(upstream.calls) == 2


def test_empty_answers_not_cached_when_disabled():
    engine, upstream, store = _engine(
        lambda q: dns.message.make_response(q), cache_empty_answers=False
    )
    engine.resolve(dns.message.make_query("nodata.test.", "AAAA"))
    engine.resolve(dns.message.make_query("nodata.test.", "AAAA"))
    assert len(upstream.calls) == 2
    assert engine.stats()["uncacheable"] == 2


def test_zero_ttl_answer_is_not_cached():
    engine, upstream, store = _engine(_a_answer(ttl=0))
    engine.resolve(dns.message.make_query("zero.test.", "A"))
    engine.resolve(dns.message.make_query("zero.test.", "A"))
    assert len(upstream.calls) == 2
    assert len(store) == 0


def test_multi_question_processed_in_order():
    """
    Brief: Each question of a multi-question query is resolved independently.

    Inputs:
      - Query carrying two questions, one already cached

    Outputs:
      - None: Asserts answer order and per-question upstream calls
    """

    def responder(query):
        name = query.question[0].name.to_text()
        addr = "192.0.2.1" if name == "one.test." else "192.0.2.2"
        return _a_answer(addr)(query)

    engine, upstream, _ = _engine(responder)
    engine.resolve(dns.message.make_query("two.test.", "A"))

    query = dns.message.make_query("one.test.", "A", id=9)
    query.question.append(dns.message.make_query("two.test.", "A").question[0])
    resp = engine.resolve(query)

    assert resp.id == 9
    assert [rr[0].to_text() for rr in resp.answer] == ["192.0.2.1", "192.0.2.2"]
    assert len(upstream.calls) == 2
    assert [len(q.question) for q in upstream.calls] == [1, 1]


def test_recursion_available_flag_follows_configuration():
    engine, _, _ = _engine(_a_answer(), recursion_available=False)
    resp = engine.resolve(dns.message.make_query("example.test.", "A"))
    assert not (resp.flags & dns.flags.RA)

    engine2, _, _ = _engine(_a_answer())
    resp2 = engine2.resolve(dns.message.make_query("example.test.", "A"))
    assert resp2.flags & dns.flags.RA


def test_resolve_requires_a_question():
    engine, _, _ = _engine(_a_answer())
    with pytest.raises(ValueError):
        engine.resolve(dns.message.Message(id=5))


def test_null_store_forwards_every_query():
    upstream = CountingUpstream(_a_answer())
    engine = ResolutionEngine(NullCacheStore(), upstream)
    engine.resolve(dns.message.make_query("example.test.", "A"))
    engine.resolve(dns.message.make_query("example.test.", "A"))
    assert len(upstream.calls) == 2


def test_negative_default_ttl_rejected():
    with pytest.raises(ValueError):
        ResolutionEngine(TTLCacheStore(), CountingUpstream(_a_answer()), default_ttl=-1)


def test_truncated_upstream_reply_is_relayed_with_tc_and_not_cached():
    """
    Brief: A TC reply from upstream reaches the client with TC and is never cached.

    Inputs:
      - Upstream returning an empty truncated reply, then a real TXT answer

    Outputs:
      - None: Asserts TC on the first reply, a second upstream call and the answer
    """
    replies = []

    def responder(query):
        r = dns.message.make_response(query)
        if not replies:
            r.flags |= dns.flags.TC
        else:
            r.answer.append(
                dns.rrset.from_text(query.question[0].name, 300, "IN", "TXT", '"v=1"')
            )
        replies.append(r)
        return r

    engine, upstream, store = _engine(responder)

    first = engine.resolve(dns.message.make_query("big.test.", "TXT", id=11))
    assert first.flags & dns.flags.TC
    assert first.answer == []
    assert first.id == 11
    assert len(store) == 0
    assert engine.stats()["uncacheable"] == 1

    second = engine.resolve(dns.message.make_query("big.test.", "TXT", id=12))
    assert not (second.flags & dns.flags.TC)
    assert second.answer[0][0].to_text() == '"v=1"'
    assert len(upstream.calls) == 2


def test_stored_value_with_unparseable_rdata_is_a_miss(clock):
    """
    Brief: A cached value whose record text no longer parses is forwarded again.

    Inputs:
      - clock: FakeClock fixture

    Outputs:
      - None: Asserts resolve succeeds via upstream instead of raising
    """
    engine, upstream, store = _engine(_a_answer(), clock=clock)
    engine.resolve(dns.message.make_query("example.test.", "A"))

    slot = store._store["example.test."]
    doc = json.loads(slot.value)
    doc["answers"][0]["rdata"] = "not-an-ip"
    store._store["example.test."] = slot._replace(value=json.dumps(doc).encode("utf-8"))

    assert store.get("example.test.") == (None, False)
    resp = engine.resolve(dns.message.make_query("example.test.", "A", id=3))
    assert resp.id == 3
    assert resp.answer[0][0].to_text() == "93.184.216.34"
    assert len(upstream.calls) == 2
