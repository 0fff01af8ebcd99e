"""Correlation backfill: give clusters with members but no payload a representative event.

One tick walks every data source in turn:

1. drain a bounded batch of unread upstream records, recording the exact
   position of every record and mirroring payloads the store is waiting on;
2. value correlation: link clusters whose last known member id is in the
   drained batch, or already sits in the mirror;
3. position correlation: for clusters still unmatched, re-read the record at
   the recorded (partition, offset) of their last known id;
4. commit consumer offsets once the data source's writes are committed.

A failing data source is logged and skipped; the next one still runs.
Linking only fills an empty ``raw_event_id`` so a repeated tick is a no-op.
"""
from __future__ import annotations
import logging
from celery import shared_task
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cluster_review import mirror, registry
from cluster_review.config import get_settings
from cluster_review.errors import MessageNotFound, ReviewError
from cluster_review.infrastructure import db
from cluster_review.member_ids import last_known_id
from cluster_review.mirror import LogMessage, LogPosition
from cluster_review.models.tables import Cluster
from cluster_review.upstream import UpstreamLog

logger = logging.getLogger(__name__)

BACKFILL_MATCHES = Counter('backfill_matches_total', 'Clusters linked to a representative payload', ['strategy'])
BACKFILL_FAILURES = Counter('backfill_failures_total', 'Data sources whose backfill tick failed', ['reason'])
BACKFILL_DRAINED = Counter('backfill_messages_drained_total', 'Upstream messages drained by backfill')
BACKFILL_FETCHES = Counter('backfill_position_fetches_total', 'Exact-position reads issued', ['outcome'])


def pending_clusters(session: Session, data_source_id: int) -> list[tuple[int, int]]:
    """(cluster row id, last known member id) for clusters still lacking a payload."""
    rows = session.execute(
        select(Cluster.id, Cluster.event_ids)
        .where(
            Cluster.data_source_id == data_source_id,
            Cluster.raw_event_id.is_(None),
            Cluster.event_ids.is_not(None),
        )
        .order_by(Cluster.id)
    ).all()
    out = []
    for row_id, blob in rows:
        last = last_known_id(blob)
        if last is not None:
            out.append((row_id, last))
    return out


def link_payload(session: Session, cluster_row_id: int, mirror_row_id: int) -> int:
    # never replaces an existing link
    return session.execute(
        update(Cluster)
        .where(Cluster.id == cluster_row_id, Cluster.raw_event_id.is_(None))
        .values(raw_event_id=mirror_row_id)
    ).rowcount


def positions_of(messages: list[LogMessage]) -> list[LogPosition]:
    spans: dict[tuple[int, int], list[int]] = {}
    for m in messages:
        if m.partition is None or m.offset is None:
            continue
        span = spans.setdefault((m.partition, m.offset), [m.identifier, m.identifier])
        span[0] = min(span[0], m.identifier)
        span[1] = max(span[1], m.identifier)
    return [LogPosition(p, o, lo, hi) for (p, o), (lo, hi) in spans.items()]


def drain(session: Session, log, data_source_id: int, topic: str, max_messages: int) -> list[LogMessage]:
    messages = log.fetch_recent(topic, max_messages)
    BACKFILL_DRAINED.inc(len(messages))
    if not messages:
        return messages
    mirror.record_positions(session, data_source_id, positions_of(messages))
    waiting = set(mirror.message_ids_without_payload(session, data_source_id))
    mirror.store_payloads(session, data_source_id, [m for m in messages if m.identifier in waiting])
    session.commit()
    return messages


def correlate_by_value(session: Session, data_source_id: int, messages: list[LogMessage]) -> int:
    pending = pending_clusters(session, data_source_id)
    if not pending:
        return 0
    drained = {m.identifier: m for m in messages}
    wanted = [m for m in (drained.get(last) for _, last in pending) if m is not None]
    rows = mirror.store_payloads(session, data_source_id, wanted)
    rows.update(mirror.payload_row_ids(session, data_source_id, [last for _, last in pending if last not in rows]))
    linked = 0
    for cluster_row_id, last in pending:
        if last in rows:
            linked += link_payload(session, cluster_row_id, rows[last])
    session.commit()
    BACKFILL_MATCHES.labels(strategy='value').inc(linked)
    return linked


def correlate_by_position(session: Session, log, data_source_id: int, topic: str, max_fetches: int) -> int:
    fetched: dict[tuple[int, int], list[LogMessage]] = {}
    linked = 0
    for cluster_row_id, last in pending_clusters(session, data_source_id):
        position = mirror.lookup_position(session, data_source_id, last)
        if position is None:
            continue
        if position not in fetched:
            if len(fetched) >= max_fetches:
                logger.info("position fetch budget of %s spent for %s", max_fetches, topic)
                break
            try:
                fetched[position] = log.fetch_at(topic, *position)
                BACKFILL_FETCHES.labels(outcome='found').inc()
            except MessageNotFound as exc:
                # expired or compacted away
                fetched[position] = []
                BACKFILL_FETCHES.labels(outcome='missing').inc()
                logger.info("%s", exc)
        match = next((m for m in fetched[position] if m.identifier == last), None)
        if match is None:
            continue
        rows = mirror.store_payloads(session, data_source_id, [match])
        linked += link_payload(session, cluster_row_id, rows[last])
    session.commit()
    BACKFILL_MATCHES.labels(strategy='position').inc(linked)
    return linked


def backfill_data_source(session: Session, log, data_source_id: int, topic: str, max_messages: int) -> dict:
    messages = drain(session, log, data_source_id, topic, max_messages)
    by_value = correlate_by_value(session, data_source_id, messages)
    by_position = correlate_by_position(session, log, data_source_id, topic, max_messages)
    log.commit(topic)
    return {"status": "ok", "drained": len(messages), "value": by_value, "position": by_position}


def backfill_all(session: Session, log, max_messages: int | None = None) -> dict:
    limit = max_messages or get_settings().backfill_max_messages
    results = {}
    for ds in registry.list_data_sources(session):
        topic = ds["topic_name"]
        try:
            results[topic] = backfill_data_source(session, log, ds["id"], topic, limit)
        except (ReviewError, SQLAlchemyError) as exc:
            session.rollback()
            BACKFILL_FAILURES.labels(reason=type(exc).__name__).inc()
            logger.warning("backfill failed for %s: %s", topic, exc)
            results[topic] = {"status": "error", "error": str(exc)}
    return results


@shared_task
def run_backfill(max_messages: int | None = None):
    log = UpstreamLog()
    if not log.configured:
        return {"status": "skipped", "reason": "kafka_not_configured"}
    session: Session = db.get_session()
    try:
        return {"status": "ok", "data_sources": backfill_all(session, log, max_messages)}
    finally:
        session.close()
        log.close()
