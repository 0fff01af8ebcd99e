"""Bounded member-id sets and overflow-safe size counters.

Member ids are producer-assigned monotonic timestamps, so the numerically
largest ids approximate the most recently produced members regardless of the
order in which reports arrive. Sets are persisted as a packed sequence of
big-endian unsigned 64-bit integers; every read path decodes before use and
every write path re-encodes.
"""
from __future__ import annotations
import heapq
import struct
from typing import Iterable

from cluster_review.errors import DecodeError

MAX_MEMBER_IDS = 25
U64_MAX = 2**64 - 1
_WIDTH = 8


def _valid(ids: Iterable[int]) -> set[int]:
    out: set[int] = set()
    for i in ids:
        try:
            v = int(i)
        except (TypeError, ValueError):
            continue
        if 0 <= v <= U64_MAX:
            out.add(v)
    return out


def encode_member_ids(ids: Iterable[int]) -> bytes:
    values = sorted(_valid(ids))
    return struct.pack(f">{len(values)}Q", *values)


def decode_member_ids(blob: bytes | None) -> list[int]:
    if not blob:
        return []
    if len(blob) % _WIDTH:
        raise DecodeError(f"member-id blob length {len(blob)} is not a multiple of {_WIDTH}")
    return list(struct.unpack(f">{len(blob) // _WIDTH}Q", bytes(blob)))


def decode_or_empty(blob: bytes | None) -> list[int]:
    """Decode a stored set, treating a corrupt blob as an empty set."""
    try:
        return decode_member_ids(blob)
    except DecodeError:
        return []


def clamp_cap(cap: int | None) -> int:
    if cap is None:
        return MAX_MEMBER_IDS
    return max(1, min(int(cap), MAX_MEMBER_IDS))


def merge_member_ids(stored: Iterable[int], incoming: Iterable[int], cap: int = MAX_MEMBER_IDS) -> list[int]:
    """Return the ``cap`` numerically largest ids of ``stored | incoming``, ascending.

    Evicted ids are gone for good: a later report naming an id smaller than
    everything retained cannot bring it back once the set is full.
    """
    return merge_and_evict(stored, incoming, cap)[0]


def merge_and_evict(stored: Iterable[int], incoming: Iterable[int], cap: int = MAX_MEMBER_IDS) -> tuple[list[int], list[int]]:
    """Like :func:`merge_member_ids`, also returning the ids that did not make the cut."""
    cap = clamp_cap(cap)
    union = _valid(stored) | _valid(incoming)
    if len(union) <= cap:
        return sorted(union), []
    kept = heapq.nlargest(cap, union)
    return sorted(kept), sorted(union.difference(kept))


def last_known_id(blob: bytes | None) -> int | None:
    ids = decode_or_empty(blob)
    return max(ids) if ids else None


def saturating_add(a: int, b: int, maximum: int = U64_MAX) -> int:
    total = a + b
    if total > maximum:
        return maximum
    return total


def parse_size(raw: object) -> int | None:
    """Parse a stored size string; ``None`` when it is not a representable count."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text.isdigit():
        return None
    value = int(text)
    if value > U64_MAX:
        return None
    return value


def accumulate_size(current: object, reported: int | None) -> str:
    """Combine a stored size with a newly reported one.

    No reported size keeps the stored value. An unparsable stored value is
    replaced by the reported size.
    """
    reported_v = None if reported is None else min(max(int(reported), 0), U64_MAX)
    current_v = parse_size(current)
    if reported_v is None:
        return str(current_v) if current_v is not None else str(current)
    if current_v is None:
        return str(reported_v)
    return str(saturating_add(current_v, reported_v))
