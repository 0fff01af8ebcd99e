"""Aggregate store: cluster and outlier upsert-merge plus analyst edits.

Every merge is a read-modify-write inside the caller's transaction. Inserts go
through ``INSERT ... ON CONFLICT DO NOTHING``; when the key already exists the
row is re-read (``FOR UPDATE`` on PostgreSQL) and merged, so concurrent reports
for one (cluster id, data source) serialize on the row lock instead of losing
each other's member ids.
"""
from __future__ import annotations
import hashlib
import logging
from datetime import datetime
from typing import Iterable
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cluster_review import registry
from cluster_review.config import get_settings
from cluster_review.errors import NothingAffected, RecordNotExist
from cluster_review.infrastructure.db import dialect_insert, supports_row_locks
from cluster_review.member_ids import (
    accumulate_size,
    clamp_cap,
    decode_or_empty,
    encode_member_ids,
    merge_and_evict,
    merge_member_ids,
)
from cluster_review.mirror import discard_message_ids, register_message_ids
from cluster_review.models.tables import Cluster, Outlier, RuntimeSetting
from cluster_review.schemas import ClusterReport, ClusterEdit, OutlierReport, QualifierUpdate

logger = logging.getLogger(__name__)

AGGREGATES_WRITTEN = Counter('aggregates_written_total', 'Cluster/outlier rows inserted or merged', ['kind', 'op'])
REPORTS_SKIPPED = Counter('aggregate_reports_skipped_total', 'Reports dropped before reaching storage', ['kind', 'reason'])

CAP_SETTING = "max_event_id_num"


def current_cap(session: Session) -> int:
    """Member-id cap in force: the stored override, else the configured default."""
    raw = session.execute(select(RuntimeSetting.value).where(RuntimeSetting.name == CAP_SETTING)).scalar()
    if raw is not None and str(raw).isdigit():
        return clamp_cap(int(raw))
    return clamp_cap(get_settings().max_event_id_num)


def set_cap(session: Session, cap: int) -> tuple[int, int]:
    """Persist a new cap; shrinking it prunes every stored set. Returns (cap, pruned rows)."""
    new_cap = clamp_cap(cap)
    old_cap = current_cap(session)
    stmt = dialect_insert(session, RuntimeSetting).values(name=CAP_SETTING, value=str(new_cap))
    session.execute(stmt.on_conflict_do_update(index_elements=["name"], set_={"value": str(new_cap)}))
    session.commit()
    pruned = 0
    if new_cap < old_cap:
        pruned = prune_member_ids(session, new_cap)
    logger.info("member-id cap changed %s -> %s (%s rows pruned)", old_cap, new_cap, pruned)
    return new_cap, pruned


def _resolve_data_source(session: Session, name: str, data_type: str | None, cache: dict) -> int | None:
    if name in cache:
        return cache[name]
    if data_type:
        ds_id = registry.get_or_create_data_source(session, name, data_type)
    else:
        ds_id = registry.find_data_source_id(session, name)
    cache[name] = ds_id
    return ds_id


def _locked(session: Session, stmt):
    if supports_row_locks(session):
        stmt = stmt.with_for_update()
    return session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def _pack(ids: list[int]) -> bytes | None:
    return encode_member_ids(ids) if ids else None


def upsert_clusters(session: Session, reports: Iterable[ClusterReport], cap: int | None = None) -> int:
    """Insert new clusters and merge reports into existing ones.

    Reports naming an unknown data source without a type cannot be placed and
    are skipped. Raises ``NothingAffected`` when no report was written.
    """
    cap = clamp_cap(cap) if cap is not None else current_cap(session)
    category_id = registry.get_category_id(session, registry.DEFAULT_CATEGORY)
    qualifier_id = registry.get_qualifier_id(session, registry.DEFAULT_QUALIFIER)
    status_id = registry.get_status_id(session, registry.PENDING_REVIEW)
    ds_cache: dict[str, int | None] = {}
    affected = 0
    for report in reports:
        ds_id = _resolve_data_source(session, report.data_source, report.data_source_type, ds_cache)
        if ds_id is None:
            REPORTS_SKIPPED.labels(kind='cluster', reason='unknown_data_source').inc()
            logger.warning("skipping cluster %s: data source %s unknown and no type given", report.cluster_id, report.data_source)
            continue
        now = datetime.utcnow()
        members, evicted = merge_and_evict([], report.event_ids, cap)
        retained = members
        insert = dialect_insert(session, Cluster).values(
            cluster_id=report.cluster_id,
            category_id=category_id,
            detector_id=report.detector_id if report.detector_id is not None else 0,
            event_ids=_pack(members),
            qualifier_id=qualifier_id,
            status_id=status_id,
            signature=report.signature if report.signature is not None else "-",
            size=accumulate_size(None, report.size) if report.size is not None else "1",
            score=report.score,
            data_source_id=ds_id,
            last_modification_time=now,
        )
        inserted = session.execute(insert.on_conflict_do_nothing(index_elements=["cluster_id", "data_source_id"])).rowcount
        if inserted:
            AGGREGATES_WRITTEN.labels(kind='cluster', op='insert').inc()
        else:
            row = _locked(session, select(Cluster).where(
                Cluster.cluster_id == report.cluster_id, Cluster.data_source_id == ds_id
            ))
            if row is None:
                continue
            merged, evicted = merge_and_evict(decode_or_empty(row.event_ids), report.event_ids, cap)
            kept = set(merged)
            retained = [i for i in report.event_ids if i in kept]
            row.event_ids = _pack(merged) if merged else row.event_ids
            row.size = accumulate_size(row.size, report.size)
            if report.signature is not None:
                row.signature = report.signature
            if report.detector_id is not None:
                row.detector_id = report.detector_id
            if report.score is not None:
                row.score = report.score
            row.last_modification_time = now
            session.flush()
            AGGREGATES_WRITTEN.labels(kind='cluster', op='merge').inc()
        register_message_ids(session, ds_id, retained)
        discard_message_ids(session, ds_id, evicted)
        affected += 1
    if not affected:
        session.rollback()
        raise NothingAffected("no cluster was inserted or updated")
    session.commit()
    return affected


def update_qualifiers(session: Session, updates: Iterable[QualifierUpdate]) -> tuple[int, set[str]]:
    """Apply analyst qualifier decisions in bulk.

    Items whose qualifier or data source does not resolve are dropped. Returns
    the affected row count and the data sources that had a row marked benign.
    """
    reviewed_id = registry.get_status_id(session, registry.REVIEWED)
    now = datetime.utcnow()
    affected = 0
    benign: set[str] = set()
    for item in updates:
        try:
            qualifier_id = registry.get_qualifier_id(session, item.qualifier)
            ds_id = registry.get_data_source_id(session, item.data_source)
        except RecordNotExist as exc:
            logger.warning("skipping qualifier update for %s: %s", item.cluster_id, exc)
            continue
        n = session.execute(
            update(Cluster)
            .where(Cluster.cluster_id == item.cluster_id, Cluster.data_source_id == ds_id)
            .values(qualifier_id=qualifier_id, status_id=reviewed_id, last_modification_time=now)
        ).rowcount
        affected += n
        if n and item.qualifier == registry.BENIGN:
            benign.add(item.data_source)
    if not affected:
        session.rollback()
        raise NothingAffected("no cluster qualifier was updated")
    session.commit()
    return affected, benign


def update_qualifier(session: Session, cluster_id: str, data_source: str, qualifier: str) -> int:
    qualifier_id = registry.get_qualifier_id(session, qualifier)
    ds_id = registry.get_data_source_id(session, data_source)
    reviewed_id = registry.get_status_id(session, registry.REVIEWED)
    n = session.execute(
        update(Cluster)
        .where(Cluster.cluster_id == cluster_id, Cluster.data_source_id == ds_id)
        .values(qualifier_id=qualifier_id, status_id=reviewed_id, last_modification_time=datetime.utcnow())
    ).rowcount
    session.commit()
    return n


def update_fields(session: Session, cluster_id: str, data_source: str, edit: ClusterEdit) -> tuple[int, bool]:
    """Rename, recategorise or requalify a single cluster.

    Returns ``(affected, became_benign)``. Raises ``ValueError`` when the edit
    carries no field at all.
    """
    if edit.is_empty():
        raise ValueError("at least one of cluster_id, category or qualifier is required")
    ds_id = registry.get_data_source_id(session, data_source)
    values: dict = {"last_modification_time": datetime.utcnow()}
    if edit.cluster_id is not None:
        values["cluster_id"] = edit.cluster_id
    if edit.category is not None:
        values["category_id"] = registry.get_category_id(session, edit.category)
    if edit.qualifier is not None:
        values["qualifier_id"] = registry.get_qualifier_id(session, edit.qualifier)
        values["status_id"] = registry.get_status_id(session, registry.REVIEWED)
    n = session.execute(
        update(Cluster).where(Cluster.cluster_id == cluster_id, Cluster.data_source_id == ds_id).values(**values)
    ).rowcount
    if not n:
        session.rollback()
        raise RecordNotExist("cluster", cluster_id)
    session.commit()
    return n, edit.qualifier == registry.BENIGN


def payload_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def upsert_outliers(session: Session, reports: Iterable[OutlierReport], cap: int | None = None) -> int:
    cap = clamp_cap(cap) if cap is not None else current_cap(session)
    ds_cache: dict[str, int | None] = {}
    affected = 0
    for report in reports:
        ds_id = _resolve_data_source(session, report.data_source, report.data_source_type, ds_cache)
        if ds_id is None:
            REPORTS_SKIPPED.labels(kind='outlier', reason='unknown_data_source').inc()
            logger.warning("skipping outlier: data source %s unknown and no type given", report.data_source)
            continue
        digest = payload_digest(report.outlier)
        members = merge_member_ids([], report.event_ids, cap)
        insert = dialect_insert(session, Outlier).values(
            raw_event=report.outlier,
            digest=digest,
            data_source_id=ds_id,
            event_ids=encode_member_ids(members),
            size=str(len(report.event_ids) or 1),
        )
        inserted = session.execute(insert.on_conflict_do_nothing(index_elements=["digest", "data_source_id"])).rowcount
        if inserted:
            AGGREGATES_WRITTEN.labels(kind='outlier', op='insert').inc()
        else:
            row = _locked(session, select(Outlier).where(Outlier.digest == digest, Outlier.data_source_id == ds_id))
            if row is None:
                continue
            row.event_ids = encode_member_ids(merge_member_ids(decode_or_empty(row.event_ids), report.event_ids, cap))
            row.size = accumulate_size(row.size, len(report.event_ids))
            session.flush()
            AGGREGATES_WRITTEN.labels(kind='outlier', op='merge').inc()
        affected += 1
    if not affected:
        session.rollback()
        raise NothingAffected("no outlier was inserted or updated")
    session.commit()
    return affected


def prune_member_ids(session: Session, cap: int) -> int:
    """Trim every stored member-id set to ``cap`` using the regular merge.

    Ids trimmed from a cluster are dropped from the mirror's waiting set too.
    """
    cap = clamp_cap(cap)
    affected = 0
    for model in (Cluster, Outlier):
        rows = session.execute(
            select(model.id, model.data_source_id, model.event_ids).where(model.event_ids.is_not(None))
        ).all()
        for row_id, ds_id, blob in rows:
            ids = decode_or_empty(blob)
            if len(ids) <= cap:
                continue
            kept, evicted = merge_and_evict(ids, [], cap)
            session.execute(update(model).where(model.id == row_id).values(event_ids=encode_member_ids(kept)))
            if model is Cluster:
                discard_message_ids(session, ds_id, evicted)
            affected += 1
    session.commit()
    return affected
