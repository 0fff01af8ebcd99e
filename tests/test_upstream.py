from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from cluster_review.config import Settings
from cluster_review.errors import FramingError
from cluster_review.upstream import UpstreamLog, decode_record


def _batch(*entries, tag="ds1"):
    return json.dumps([tag, [list(e) for e in entries]]).encode()


def test_decode_record_splits_batch():
    value = _batch((101, {"message": "alpha"}), (102, {"message": "beta", "host": "h1"}))
    messages = decode_record(value, partition=2, offset=40)
    assert [(m.identifier, m.payload, m.partition, m.offset) for m in messages] == [
        (101, b"alpha", 2, 40),
        (102, b"beta", 2, 40),
    ]


def test_decode_record_skips_bad_entries_only():
    value = _batch(
        (1, {"message": "ok"}),
        ("two", {"message": "bad id"}),
        (3, {"no_message": True}),
        (-4, {"message": "negative"}),
        (5, {"message": [104, 105]}),
    )
    messages = decode_record(value)
    assert [(m.identifier, m.payload) for m in messages] == [(1, b"ok"), (5, b"hi")]


@pytest.mark.parametrize("value", [b"\xff\xfe", b"{}", b'["tag"]', b'["tag", "entries"]', None])
def test_decode_record_rejects_unframed_records(value):
    with pytest.raises(FramingError):
        decode_record(value)


class _StubConsumer:
    def __init__(self, batches):
        self.batches = list(batches)
        self.committed = False

    def poll(self, timeout_ms=0, max_records=None):
        return self.batches.pop(0) if self.batches else {}

    def commit(self):
        self.committed = True

    def close(self):
        pass


def _record(offset, value, partition=0):
    return SimpleNamespace(topic="ds1", partition=partition, offset=offset, value=value)


def test_fetch_recent_survives_undecodable_record():
    log = UpstreamLog(Settings(KAFKA_BOOTSTRAP_SERVERS="broker:9092"))
    consumer = _StubConsumer([{("ds1", 0): [
        _record(0, _batch((10, {"message": "a"}))),
        _record(1, b"garbage"),
        _record(2, _batch((12, {"message": "c"}))),
    ]}])
    log._group_consumers["ds1"] = consumer
    messages = log.fetch_recent("ds1", 100)
    assert [(m.identifier, m.offset) for m in messages] == [(10, 0), (12, 2)]
    log.commit("ds1")
    assert consumer.committed


def test_unconfigured_log():
    assert not UpstreamLog(Settings(KAFKA_BOOTSTRAP_SERVERS=None)).configured
