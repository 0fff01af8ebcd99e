from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cluster_review import query, store
from cluster_review.api.deps import get_db
from cluster_review.schemas import OutlierReport

router = APIRouter(prefix="/api/outlier", tags=["outlier"])


@router.get("")
def list_outliers(
    filter: Optional[str] = None,
    select: Optional[str] = None,
    page: Optional[str] = None,
    per_page: Optional[str] = None,
    orderby: Optional[str] = None,
    order: Optional[str] = None,
    db: Session = Depends(get_db),
):
    params = query.ListParams(filter=filter, select=select, page=page, per_page=per_page, orderby=orderby, order=order)
    result = query.run_list_query(db, query.OUTLIER, params)
    return JSONResponse(content=result.rows, headers=result.headers())


@router.put("")
def report_outliers(reports: List[OutlierReport] = Body(...), db: Session = Depends(get_db)):
    return {"affected": store.upsert_outliers(db, reports)}
