"""Shared fixtures: in-memory SQLite store, seeded lookup tables, in-memory upstream log."""

from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("ETCD_ADDR", None)
os.environ.pop("KAFKA_BOOTSTRAP_SERVERS", None)
os.environ.pop("MAX_EVENT_ID_NUM", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from cluster_review import registry
from cluster_review.config import reset_settings
from cluster_review.errors import MessageNotFound, UpstreamUnavailable
from cluster_review.infrastructure import db as dbinfra
from cluster_review.mirror import LogMessage
from cluster_review.models import tables  # noqa: F401

reset_settings()


@pytest.fixture
def engine():
    e = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    dbinfra.override_engine(e)
    dbinfra.Base.metadata.create_all(e)
    with dbinfra.SessionLocal() as s:
        registry.seed_lookup_tables(s)
    yield e
    dbinfra.Base.metadata.drop_all(e)
    e.dispose()


@pytest.fixture
def session(engine):
    s = dbinfra.SessionLocal()
    yield s
    s.close()


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient
    from cluster_review.api.main import app

    with TestClient(app) as c:
        yield c


class FakeUpstreamLog:
    """In-memory stand-in for :class:`cluster_review.upstream.UpstreamLog`.

    ``records`` maps a topic to ``[(partition, offset, [(message_id, payload), ...]), ...]``.
    Records listed in ``expired`` are reachable by position only.
    """

    def __init__(self, records=None, expired=None, failing=()):
        self.stored: dict[str, dict[tuple[int, int], list[LogMessage]]] = {}
        self.unread: dict[str, list[tuple[int, int]]] = {}
        self.failing = set(failing)
        self.commits: list[str] = []
        self.fetch_at_calls: list[tuple[str, int, int]] = []
        for topic, recs in (records or {}).items():
            for partition, offset, messages in recs:
                self._store(topic, partition, offset, messages)
                self.unread.setdefault(topic, []).append((partition, offset))
        for topic, recs in (expired or {}).items():
            for partition, offset, messages in recs:
                self._store(topic, partition, offset, messages)

    def _store(self, topic, partition, offset, messages):
        self.stored.setdefault(topic, {})[(partition, offset)] = [
            LogMessage(mid, payload, partition, offset) for mid, payload in messages
        ]

    def fetch_recent(self, topic, max_count):
        if topic in self.failing:
            raise UpstreamUnavailable(f"broker down for {topic}")
        pending = self.unread.get(topic, [])
        taken, self.unread[topic] = pending[:max_count], pending[max_count:]
        out = []
        for position in taken:
            out.extend(self.stored[topic][position])
        return out

    def fetch_at(self, topic, partition, offset):
        self.fetch_at_calls.append((topic, partition, offset))
        if topic in self.failing:
            raise UpstreamUnavailable(f"broker down for {topic}")
        try:
            return list(self.stored[topic][(partition, offset)])
        except KeyError:
            raise MessageNotFound(topic, partition, offset) from None

    def commit(self, topic):
        self.commits.append(topic)


@pytest.fixture
def fake_log_factory():
    return FakeUpstreamLog
