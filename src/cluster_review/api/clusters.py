from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cluster_review import notify, query, store
from cluster_review.api.deps import get_db
from cluster_review.schemas import ClusterEdit, ClusterReport, QualifierUpdate

router = APIRouter(prefix="/api/cluster", tags=["cluster"])


@router.get("")
def list_clusters(
    filter: Optional[str] = None,
    select: Optional[str] = None,
    page: Optional[str] = None,
    per_page: Optional[str] = None,
    orderby: Optional[str] = None,
    order: Optional[str] = None,
    db: Session = Depends(get_db),
):
    params = query.ListParams(filter=filter, select=select, page=page, per_page=per_page, orderby=orderby, order=order)
    result = query.run_list_query(db, query.CLUSTER, params)
    return JSONResponse(content=result.rows, headers=result.headers())


@router.put("")
def report_clusters(reports: List[ClusterReport] = Body(...), db: Session = Depends(get_db)):
    affected = store.upsert_clusters(db, reports)
    return {"affected": affected}


@router.put("/qualifier")
def update_qualifiers(
    background_tasks: BackgroundTasks,
    updates: List[QualifierUpdate] = Body(...),
    db: Session = Depends(get_db),
):
    affected, benign = store.update_qualifiers(db, updates)
    if benign:
        background_tasks.add_task(notify.notify_benign, benign)
    return {"affected": affected}


@router.put("/{cluster_id}")
def edit_cluster(
    cluster_id: str,
    background_tasks: BackgroundTasks,
    data_source: Optional[str] = Query(None),
    edit: ClusterEdit = Body(...),
    db: Session = Depends(get_db),
):
    if not data_source:
        return JSONResponse(status_code=400, content={"message": "data_source is required"})
    try:
        affected, became_benign = store.update_fields(db, cluster_id, data_source, edit)
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"message": str(exc)})
    if became_benign:
        background_tasks.add_task(notify.notify_benign, [data_source])
    return {"affected": affected}
