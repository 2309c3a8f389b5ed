"""Cache-aware resolution engine.

Brief:
  The engine answers a structured DNS query from the cache when it can and
  otherwise forwards it to the upstream resolver, caching successful
  answers for the smallest TTL among their records. Every response it
  builds carries the transaction ID of the request being answered.

Inputs:
  - dnspython query messages (already decoded by the transport adapter)

Outputs:
  - dnspython response messages, or ResolutionFailed when the upstream
    exchange fails
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

import dns.flags
import dns.message
import dns.rcode
import dns.rrset

from .cache.base import CacheStore
from .cache.entry import CacheEntry, answers_to_rrsets, entry_from_message
from .upstream import UpstreamResolver

logger = logging.getLogger("dnsrelay.resolver")


class ResolutionFailed(Exception):
    """
    Brief: The upstream exchange for one question failed; nothing was cached.

    Inputs:
    - reason: 'timeout', 'network_error' or 'malformed'
    - qname: question name being resolved

    Outputs:
    - Exception instance
    """

    def __init__(self, reason: str, qname: str) -> None:
        super().__init__(f"upstream {reason} while resolving {qname}")
        self.reason = reason
        self.qname = qname


class ResolutionEngine:
    """Per-query state machine: check cache, forward on miss, populate, respond.

    Example use:
        >>> from dnsrelay.cache import TTLCacheStore
        >>> from dnsrelay.upstream import UpstreamResolver
        >>> engine = ResolutionEngine(
        ...     TTLCacheStore(max_cost=1000), UpstreamResolver("127.0.0.1", 53)
        ... )
        >>> engine.default_ttl
        60
    """

    def __init__(
        self,
        cache: CacheStore,
        upstream: UpstreamResolver,
        *,
        default_ttl: int = 60,
        recursion_available: bool = True,
        cache_empty_answers: bool = True,
    ) -> None:
        """Initialize the engine.

        Inputs:
            cache: CacheStore shared by all resolution flows.
            upstream: Client for the configured upstream resolver.
            default_ttl: TTL in seconds for successful responses with an empty
                answer set.
            recursion_available: Whether responses advertise RA.
            cache_empty_answers: Cache empty NOERROR answers with default_ttl;
                when False they are forwarded every time.
        """
        if int(default_ttl) < 0:
            raise ValueError("default_ttl must be >= 0")
        self.cache = cache
        self.upstream = upstream
        self.default_ttl = int(default_ttl)
        self.recursion_available = bool(recursion_available)
        self.cache_empty_answers = bool(cache_empty_answers)

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            "queries": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "upstream_failures": 0,
            "uncacheable": 0,
        }

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def cache_ttl(self, entry: CacheEntry) -> Optional[int]:
        """Brief: Decide how long a freshly forwarded answer may be cached.

        Inputs:
          - entry: CacheEntry built from the upstream response.

        Outputs:
          - int seconds (> 0), or None when the entry must not be cached.

        Rules:
          - Only NOERROR responses are cached.
          - Truncated (TC) responses are never cached.
          - The TTL is the minimum TTL among the answer records.
          - An empty answer set uses default_ttl, unless cache_empty_answers
            is off.
          - A TTL of 0 means "do not cache".

        Example:
          >>> # answers with TTLs 30, 10 and 60 -> 10
        """

        if entry.rcode != dns.rcode.NOERROR or entry.truncated:
            return None
        ttl = entry.min_ttl()
        if ttl is None:
            if not self.cache_empty_answers:
                return None
            ttl = self.default_ttl
        if ttl <= 0:
            return None
        return int(ttl)

    @staticmethod
    def _subquery(
        query: dns.message.Message, question: dns.rrset.RRset
    ) -> dns.message.Message:
        """Brief: Build the message forwarded upstream for one question.

        Inputs:
          - query: Client query.
          - question: One entry of query.question.

        Outputs:
          - The query itself when it has a single question, otherwise a
            one-question copy with the same ID, flags and EDNS settings.
        """

        if len(query.question) == 1:
            return query
        sub = dns.message.Message(id=query.id)
        sub.flags = query.flags
        sub.question = [question]
        if query.edns >= 0:
            sub.use_edns(query.edns, query.ednsflags, query.payload, options=query.options)
        return sub

    def _resolve_question(
        self, query: dns.message.Message, question: dns.rrset.RRset
    ) -> CacheEntry:
        qname = question.name.to_text()

        entry, found = self.cache.get(qname)
        if found and entry is not None:
            self._count("cache_hits")
            logger.debug("Cache hit for %s (%d answers)", qname, entry.ancount)
            return entry

        self._count("cache_misses")
        outcome = self.upstream.forward(self._subquery(query, question))
        if not outcome.ok or outcome.response is None:
            self._count("upstream_failures")
            raise ResolutionFailed(outcome.reason, qname) from outcome.error

        entry = entry_from_message(outcome.response)
        ttl = self.cache_ttl(entry)
        if ttl is None:
            self._count("uncacheable")
            logger.debug(
                "Not caching %s (rcode=%s, answers=%d, truncated=%s)",
                qname,
                dns.rcode.to_text(entry.rcode),
                entry.ancount,
                entry.truncated,
            )
        else:
            logger.debug("Caching %s with TTL %ds", qname, ttl)
            self.cache.set(qname, entry, ttl)
        return entry

    def _respond(
        self, query: dns.message.Message, entries: List[CacheEntry]
    ) -> dns.message.Message:
        """Brief: Assemble the reply for query from per-question results.

        Inputs:
          - query: Client query (its ID, question, RD and EDNS are echoed).
          - entries: One CacheEntry per question, in question order.

        Outputs:
          - dns.message.Message: QR set, RA per configuration, answers in
            question order, rcode of the first non-NOERROR result, TC when
            any upstream reply was truncated.
        """

        response = dns.message.make_response(
            query, recursion_available=self.recursion_available
        )
        rcode = dns.rcode.NOERROR
        for entry in entries:
            for rrset in answers_to_rrsets(entry.answers):
                response.answer.append(rrset)
            if rcode == dns.rcode.NOERROR and entry.rcode != dns.rcode.NOERROR:
                rcode = dns.rcode.Rcode.make(entry.rcode)
            if entry.truncated:
                response.flags |= dns.flags.TC
        response.set_rcode(rcode)
        response.id = query.id
        return response

    def resolve(self, query: dns.message.Message) -> dns.message.Message:
        """Brief: Resolve every question of query and build the reply.

        Inputs:
          - query: Decoded client query with at least one question.

        Outputs:
          - dns.message.Message carrying query.id.

        Raises:
          - ResolutionFailed: an upstream exchange failed; the cache is left
            untouched for that question.
          - ValueError: the message has no question section.

        Example:
          >>> # resp = engine.resolve(dns.message.make_query("example.test", "A"))
        """

        if not query.question:
            raise ValueError("query has no question")
        self._count("queries")
        entries = [self._resolve_question(query, q) for q in query.question]
        return self._respond(query, entries)
