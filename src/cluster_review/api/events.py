"""Raw log mirror, position metadata and member-id cap endpoints."""
from __future__ import annotations
from collections import defaultdict
from typing import List
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from cluster_review import mirror, registry, store
from cluster_review.api.deps import get_db
from cluster_review.errors import NothingAffected
from cluster_review.mirror import LogMessage, LogPosition
from cluster_review.schemas import EventPayloadIn, PositionIn
from cluster_review.tasks.backfill import correlate_by_value

router = APIRouter(prefix="/api", tags=["events"])


@router.get("/kafka_metadata")
def get_positions(data_source_id: int = Query(...), db: Session = Depends(get_db)):
    return mirror.positions_for(db, data_source_id)


@router.put("/kafka_metadata")
def put_positions(positions: List[PositionIn] = Body(...), db: Session = Depends(get_db)):
    grouped: dict[int, list[LogPosition]] = defaultdict(list)
    for p in positions:
        lo, hi = sorted(p.message_ids)
        grouped[p.data_source_id].append(LogPosition(p.partition, p.offsets, lo, hi))
    inserted = 0
    for ds_id, items in grouped.items():
        inserted += mirror.record_positions(db, ds_id, items)
    db.commit()
    return {"inserted": inserted}


@router.get("/event/no_raw_events")
def get_waiting_events(data_source_id: int = Query(...), db: Session = Depends(get_db)):
    return mirror.pending_fetch_plan(db, data_source_id)


@router.put("/event")
def put_events(events: List[EventPayloadIn] = Body(...), db: Session = Depends(get_db)):
    """Accept payloads pulled by an external collector and link any cluster waiting on them."""
    grouped: dict[str, list[LogMessage]] = defaultdict(list)
    for e in events:
        grouped[e.data_source].append(LogMessage(e.message_id, e.raw_event.encode("utf-8")))
    stored = linked = 0
    for name, messages in grouped.items():
        ds_id = registry.find_data_source_id(db, name)
        if ds_id is None:
            continue
        stored += len(mirror.store_payloads(db, ds_id, messages))
        linked += correlate_by_value(db, ds_id, messages)
    if not stored:
        raise NothingAffected("no event was stored")
    db.commit()
    return {"stored": stored, "linked": linked}


@router.get("/event_id")
def get_cap(db: Session = Depends(get_db)):
    return {"max_event_id_num": store.current_cap(db)}


@router.put("/event_id")
def put_cap(max_event_id_num: int = Query(..., ge=1), db: Session = Depends(get_db)):
    cap, pruned = store.set_cap(db, max_event_id_num)
    return {"max_event_id_num": cap, "pruned": pruned}
