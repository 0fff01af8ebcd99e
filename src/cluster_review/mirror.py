"""Raw log mirror: payload cache and durable log positions.

Every write here is keyed by (data source, message id) or by
(data source, partition, offset) and tolerates replays, so a backfill tick
that dies half-way can simply run again.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable
from sqlalchemy import select, and_, delete, func
from sqlalchemy.orm import Session

from cluster_review.infrastructure.db import dialect_insert
from cluster_review.models.tables import Cluster, RawEvent, KafkaMetadata


@dataclass(frozen=True)
class LogMessage:
    identifier: int
    payload: bytes
    partition: int | None = None
    offset: int | None = None


@dataclass(frozen=True)
class LogPosition:
    partition: int
    offset: int
    first_message_id: int
    last_message_id: int


def register_message_ids(session: Session, data_source_id: int, message_ids: Iterable[int]) -> int:
    """Remember member ids whose payload has not been pulled yet."""
    rows = [{"message_id": Decimal(i), "data_source_id": data_source_id} for i in sorted(set(message_ids))]
    if not rows:
        return 0
    stmt = dialect_insert(session, RawEvent).values(rows)
    result = session.execute(stmt.on_conflict_do_nothing(index_elements=["message_id", "data_source_id"]))
    return result.rowcount or 0


def store_payloads(session: Session, data_source_id: int, messages: Iterable[LogMessage]) -> dict[int, int]:
    """Upsert payloads and return ``{message_id: mirror row id}`` for the stored messages."""
    latest: dict[int, LogMessage] = {}
    for m in messages:
        latest[m.identifier] = m
    if not latest:
        return {}
    rows = [
        {
            "message_id": Decimal(m.identifier),
            "data_source_id": data_source_id,
            "raw_event": m.payload,
            "partition": m.partition,
            "offset": m.offset,
        }
        for m in latest.values()
    ]
    stmt = dialect_insert(session, RawEvent).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["message_id", "data_source_id"],
        set_={
            "raw_event": stmt.excluded.raw_event,
            "partition": func.coalesce(stmt.excluded.partition, RawEvent.partition),
            "offset": func.coalesce(stmt.excluded.offset, RawEvent.offset),
        },
    )
    session.execute(stmt)
    return mirror_row_ids(session, data_source_id, latest.keys())


def mirror_row_ids(session: Session, data_source_id: int, message_ids: Iterable[int]) -> dict[int, int]:
    ids = [Decimal(i) for i in set(message_ids)]
    if not ids:
        return {}
    q = select(RawEvent.message_id, RawEvent.id).where(
        RawEvent.data_source_id == data_source_id, RawEvent.message_id.in_(ids)
    )
    return {int(mid): rid for mid, rid in session.execute(q)}


def message_ids_without_payload(session: Session, data_source_id: int) -> list[int]:
    q = select(RawEvent.message_id).where(
        RawEvent.data_source_id == data_source_id, RawEvent.raw_event.is_(None)
    ).order_by(RawEvent.message_id)
    return [int(m) for m in session.execute(q).scalars()]


def record_positions(session: Session, data_source_id: int, positions: Iterable[LogPosition]) -> int:
    rows = [
        {
            "data_source_id": data_source_id,
            "partition": p.partition,
            "offsets": p.offset,
            "first_message_id": Decimal(p.first_message_id),
            "last_message_id": Decimal(p.last_message_id),
        }
        for p in {(p.partition, p.offset): p for p in positions}.values()
    ]
    if not rows:
        return 0
    stmt = dialect_insert(session, KafkaMetadata).values(rows)
    result = session.execute(stmt.on_conflict_do_nothing(index_elements=["data_source_id", "partition", "offsets"]))
    return result.rowcount or 0


def lookup_position(session: Session, data_source_id: int, message_id: int) -> tuple[int, int] | None:
    """Exact (partition, offset) for a message id, if one was ever observed."""
    own = session.execute(
        select(RawEvent.partition, RawEvent.offset).where(
            RawEvent.data_source_id == data_source_id,
            RawEvent.message_id == Decimal(message_id),
            RawEvent.partition.is_not(None),
            RawEvent.offset.is_not(None),
        )
    ).first()
    if own is not None:
        return int(own[0]), int(own[1])
    covering = session.execute(
        select(KafkaMetadata.partition, KafkaMetadata.offsets, KafkaMetadata.last_message_id)
        .where(
            and_(
                KafkaMetadata.data_source_id == data_source_id,
                KafkaMetadata.first_message_id <= Decimal(message_id),
                KafkaMetadata.last_message_id >= Decimal(message_id),
            )
        )
        .order_by(KafkaMetadata.offsets)
    ).first()
    if covering is None:
        return None
    return int(covering[0]), int(covering[1])


def positions_for(session: Session, data_source_id: int) -> list[dict]:
    q = select(KafkaMetadata).where(KafkaMetadata.data_source_id == data_source_id).order_by(
        KafkaMetadata.partition, KafkaMetadata.offsets
    )
    return [
        {
            "data_source_id": r.data_source_id,
            "partition": r.partition,
            "offsets": r.offsets,
            "message_ids": [int(r.first_message_id), int(r.last_message_id)],
        }
        for r in session.execute(q).scalars()
    ]


def pending_fetch_plan(session: Session, data_source_id: int) -> dict:
    """Message ids still missing a payload plus the distinct positions that cover them."""
    message_ids = message_ids_without_payload(session, data_source_id)
    positions: list[tuple[int, int]] = []
    seen: set[tuple[int, int]] = set()
    for mid in message_ids:
        pos = lookup_position(session, data_source_id, mid)
        if pos is not None and pos not in seen:
            seen.add(pos)
            positions.append(pos)
    return {"message_ids": message_ids, "metadata": [list(p) for p in positions]}


def payload_row_ids(session: Session, data_source_id: int, message_ids: Iterable[int]) -> dict[int, int]:
    """Like ``mirror_row_ids`` but only for messages whose payload is already stored."""
    ids = [Decimal(i) for i in set(message_ids)]
    if not ids:
        return {}
    q = select(RawEvent.message_id, RawEvent.id).where(
        RawEvent.data_source_id == data_source_id,
        RawEvent.message_id.in_(ids),
        RawEvent.raw_event.is_not(None),
    )
    return {int(mid): rid for mid, rid in session.execute(q)}


def discard_message_ids(session: Session, data_source_id: int, message_ids: Iterable[int]) -> int:
    """Forget ids no cluster retains any more.

    Only rows still waiting for a payload and not linked from a cluster are
    removed; a mirrored payload stays retrievable after its id is evicted.
    """
    ids = [Decimal(i) for i in set(message_ids)]
    if not ids:
        return 0
    linked = select(Cluster.raw_event_id).where(Cluster.raw_event_id.is_not(None))
    result = session.execute(
        delete(RawEvent).where(
            RawEvent.data_source_id == data_source_id,
            RawEvent.message_id.in_(ids),
            RawEvent.raw_event.is_(None),
            RawEvent.id.not_in(linked),
        )
    )
    return result.rowcount or 0
