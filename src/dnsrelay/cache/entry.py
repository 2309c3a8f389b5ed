"""Cache entry model and its versioned wire format.

Brief:
  A cached value is the minimal slice of an upstream response needed to
  rebuild a reply: the ordered answer records plus the response code and
  opcode. Values are persisted as a small versioned JSON document rather
  than as live dnspython objects so every store backend holds plain bytes.

Inputs:
  - dnspython messages (for conversion helpers)

Outputs:
  - ResolvedAnswer / CacheEntry dataclasses and encode/decode helpers
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

import dns.exception
import dns.flags
import dns.message
import dns.rrset

FORMAT_VERSION = 1


class CacheDecodeError(ValueError):
    """
    Brief: A stored cache value could not be decoded.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


@dataclass(frozen=True)
class ResolvedAnswer:
    """One answer record as reported by the upstream authority."""

    name: str
    rtype: int
    rclass: int
    ttl: int
    rdata: str


@dataclass(frozen=True)
class CacheEntry:
    """Brief: A cached answer set plus the metadata needed to rebuild a reply.

    Inputs:
      - answers: Ordered ResolvedAnswer records.
      - rcode: Upstream response code.
      - opcode: Upstream opcode.
      - inserted_at: Store clock reading at insertion (filled in by stores).
      - ttl: Effective retention in seconds (filled in by stores, 0 = no expiry).
      - truncated: Upstream reply had TC set. Never persisted; truncated
        entries are not cached.

    Outputs:
      - CacheEntry instance.
    """

    answers: Tuple[ResolvedAnswer, ...] = ()
    rcode: int = 0
    opcode: int = 0
    inserted_at: float = field(default=0.0, compare=False)
    ttl: int = field(default=0, compare=False)
    truncated: bool = field(default=False, compare=False)

    @property
    def ancount(self) -> int:
        return len(self.answers)

    @property
    def expires_at(self) -> float | None:
        """Absolute expiry on the store clock, or None for entries that never expire."""
        if self.ttl <= 0:
            return None
        return self.inserted_at + self.ttl

    def min_ttl(self) -> int | None:
        """Smallest answer TTL, or None when the answer set is empty."""
        if not self.answers:
            return None
        return min(int(a.ttl) for a in self.answers)


def answers_from_message(msg: dns.message.Message) -> Tuple[ResolvedAnswer, ...]:
    """Brief: Flatten the answer section of a message into ResolvedAnswer records.

    Inputs:
      - msg: Parsed dnspython message.

    Outputs:
      - tuple of ResolvedAnswer in section order.
    """

    out: List[ResolvedAnswer] = []
    for rrset in msg.answer:
        name = rrset.name.to_text()
        for rd in rrset:
            out.append(
                ResolvedAnswer(
                    name=name,
                    rtype=int(rrset.rdtype),
                    rclass=int(rrset.rdclass),
                    ttl=int(rrset.ttl),
                    rdata=rd.to_text(),
                )
            )
    return tuple(out)


def entry_from_message(msg: dns.message.Message) -> CacheEntry:
    return CacheEntry(
        answers=answers_from_message(msg),
        rcode=int(msg.rcode()),
        opcode=int(msg.opcode()),
        truncated=bool(msg.flags & dns.flags.TC),
    )


def answers_to_rrsets(answers: Iterable[ResolvedAnswer]) -> List[dns.rrset.RRset]:
    """Brief: Rebuild RRsets from answers, grouping consecutive records.

    Inputs:
      - answers: ResolvedAnswer records in section order.

    Outputs:
      - list of dns.rrset.RRset preserving the original record order.

    Notes:
      - Consecutive records that share name, type, class and TTL are folded
        into one RRset, which is how they arrived from upstream.
    """

    rrsets: List[dns.rrset.RRset] = []
    group: List[ResolvedAnswer] = []

    def _flush() -> None:
        if not group:
            return
        head = group[0]
        rrsets.append(
            dns.rrset.from_text_list(
                head.name,
                head.ttl,
                head.rclass,
                head.rtype,
                [a.rdata for a in group],
            )
        )
        group.clear()

    for ans in answers:
        if group:
            head = group[0]
            if (head.name, head.rtype, head.rclass, head.ttl) != (
                ans.name,
                ans.rtype,
                ans.rclass,
                ans.ttl,
            ):
                _flush()
        group.append(ans)
    _flush()
    return rrsets


def encode_entry(entry: CacheEntry) -> bytes:
    """Brief: Serialize a CacheEntry into the versioned JSON format.

    Inputs:
      - entry: CacheEntry to serialize.

    Outputs:
      - bytes: UTF-8 JSON document.

    Example:
      >>> encode_entry(CacheEntry())
      b'{"ancount":0,"answers":[],"opcode":0,"rcode":0,"v":1}'
    """

    doc = {
        "v": FORMAT_VERSION,
        "rcode": int(entry.rcode),
        "opcode": int(entry.opcode),
        "ancount": entry.ancount,
        "answers": [
            {
                "name": a.name,
                "type": int(a.rtype),
                "class": int(a.rclass),
                "ttl": int(a.ttl),
                "rdata": a.rdata,
            }
            for a in entry.answers
        ],
    }
    return json.dumps(doc, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _require(obj: dict, key: str, kind: type | Tuple[type, ...]):
    value = obj.get(key)
    # bool is an int subclass; it is never a valid numeric field here.
    if isinstance(value, bool) or not isinstance(value, kind):
        raise CacheDecodeError(f"field {key!r} missing or not {kind}")
    return value


def decode_entry(data: bytes | bytearray | memoryview) -> CacheEntry:
    """Brief: Parse bytes produced by encode_entry back into a CacheEntry.

    Inputs:
      - data: Serialized cache value.

    Outputs:
      - CacheEntry (inserted_at/ttl left at defaults).

    Raises:
      - CacheDecodeError: for any malformed, truncated, or foreign value,
        including records whose name or rdata text does not parse.
    """

    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError, TypeError) as exc:
        raise CacheDecodeError(f"not a cache document: {exc}") from exc
    if not isinstance(doc, dict):
        raise CacheDecodeError("cache document must be an object")

    version = _require(doc, "v", int)
    if version != FORMAT_VERSION:
        raise CacheDecodeError(f"unsupported cache format version {version}")

    raw_answers = doc.get("answers")
    if not isinstance(raw_answers, list):
        raise CacheDecodeError("field 'answers' missing or not a list")

    answers: List[ResolvedAnswer] = []
    for raw in raw_answers:
        if not isinstance(raw, dict):
            raise CacheDecodeError("answer record must be an object")
        answers.append(
            ResolvedAnswer(
                name=_require(raw, "name", str),
                rtype=_require(raw, "type", int),
                rclass=_require(raw, "class", int),
                ttl=_require(raw, "ttl", int),
                rdata=_require(raw, "rdata", str),
            )
        )

    ancount = _require(doc, "ancount", int)
    if ancount != len(answers):
        raise CacheDecodeError(
            f"answer count mismatch: header says {ancount}, found {len(answers)}"
        )

    # Records must rebuild into rrsets now, while a failure still reads as a miss.
    try:
        answers_to_rrsets(answers)
    except (dns.exception.DNSException, ValueError) as exc:
        raise CacheDecodeError(f"unparseable answer record: {exc}") from exc

    return CacheEntry(
        answers=tuple(answers),
        rcode=_require(doc, "rcode", int),
        opcode=_require(doc, "opcode", int),
    )


def entry_cost(value: bytes, mode: str) -> int:
    """Cost of one stored value: 1 per entry, or its serialized length."""
    if mode == "bytes":
        return max(1, len(value))
    return 1
