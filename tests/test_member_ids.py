from __future__ import annotations

import random

import pytest

from cluster_review.errors import DecodeError
from cluster_review.member_ids import (
    MAX_MEMBER_IDS,
    U64_MAX,
    accumulate_size,
    clamp_cap,
    decode_member_ids,
    decode_or_empty,
    encode_member_ids,
    last_known_id,
    merge_and_evict,
    merge_member_ids,
    parse_size,
    saturating_add,
)


def test_merge_keeps_largest_of_union_for_random_sets():
    rng = random.Random(20231017)
    for _ in range(300):
        stored = set(rng.sample(range(1, 400), rng.randint(0, MAX_MEMBER_IDS)))
        incoming = set(rng.sample(range(1, 400), rng.randint(0, 60)))
        merged = merge_member_ids(stored, incoming)
        union = stored | incoming
        assert len(merged) <= MAX_MEMBER_IDS
        assert set(merged) <= union
        assert merged == sorted(union)[-MAX_MEMBER_IDS:]


def test_merge_small_union_keeps_everything_sorted():
    assert merge_member_ids([1, 2, 3], [5, 4]) == [1, 2, 3, 4, 5]


def test_merge_evicts_smallest_not_oldest():
    stored = list(range(100, 125))
    merged = merge_member_ids(stored, [1, 200])
    assert 1 not in merged
    assert 100 not in merged
    assert merged[-1] == 200
    assert len(merged) == MAX_MEMBER_IDS


def test_evicted_id_does_not_come_back():
    full = list(range(100, 125))
    merged = merge_member_ids(full, [5])
    assert merge_member_ids(merged, [5]) == full


def test_merge_respects_smaller_cap():
    assert merge_member_ids([1, 2, 3], [4, 5], cap=2) == [4, 5]


def test_merge_reports_evicted_ids():
    assert merge_and_evict([1, 2, 3], [4, 5], cap=2) == ([4, 5], [1, 2, 3])
    assert merge_and_evict([1], [2], cap=5) == ([1, 2], [])


def test_clamp_cap_bounds():
    assert clamp_cap(None) == MAX_MEMBER_IDS
    assert clamp_cap(0) == 1
    assert clamp_cap(500) == MAX_MEMBER_IDS
    assert clamp_cap(7) == 7


def test_codec_is_sorted_big_endian_u64():
    blob = encode_member_ids([3, 1, 2, 2])
    assert len(blob) == 24
    assert blob[:8] == (1).to_bytes(8, "big")
    assert decode_member_ids(blob) == [1, 2, 3]


def test_codec_drops_out_of_range_values():
    assert decode_member_ids(encode_member_ids([-1, U64_MAX + 1, U64_MAX])) == [U64_MAX]


def test_decode_rejects_truncated_blob():
    with pytest.raises(DecodeError):
        decode_member_ids(b"\x00\x01\x02")
    assert decode_or_empty(b"\x00\x01\x02") == []
    assert decode_or_empty(None) == []


def test_last_known_id():
    assert last_known_id(encode_member_ids([9, 4, 30])) == 30
    assert last_known_id(None) is None
    assert last_known_id(b"\x01") is None


def test_saturating_add_never_wraps():
    assert saturating_add(U64_MAX, 1) == U64_MAX
    assert saturating_add(U64_MAX, U64_MAX) == U64_MAX
    assert saturating_add(U64_MAX - 1, 1) == U64_MAX
    assert saturating_add(2, 3) == 5


def test_parse_size():
    assert parse_size("42") == 42
    assert parse_size(" 7 ") == 7
    assert parse_size("-1") is None
    assert parse_size("abc") is None
    assert parse_size(str(U64_MAX + 1)) is None
    assert parse_size(None) is None


def test_accumulate_size():
    assert accumulate_size("1", 2) == "3"
    assert accumulate_size("5", None) == "5"
    assert accumulate_size("garbage", 4) == "4"
    assert accumulate_size(str(U64_MAX), 10) == str(U64_MAX)
    assert accumulate_size(None, 3) == "3"
