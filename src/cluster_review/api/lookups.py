"""Data sources and the static category / qualifier / status tables."""
from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cluster_review import registry
from cluster_review.api.deps import get_db
from cluster_review.models.tables import Category, Qualifier, Status
from cluster_review.schemas import CategoryName

router = APIRouter(prefix="/api", tags=["lookups"])


@router.get("/data_source")
def get_data_sources(data_source: Optional[str] = None, db: Session = Depends(get_db)):
    if data_source is not None:
        return {"id": registry.get_data_source_id(db, data_source), "topic_name": data_source}
    return registry.list_data_sources(db)


@router.post("/data_source")
def create_data_source(
    data_source: str = Query(...),
    data_type: str = Query(...),
    db: Session = Depends(get_db),
):
    ds_id = registry.get_or_create_data_source(db, data_source, data_type)
    db.commit()
    return JSONResponse(status_code=201, content={"id": ds_id})


@router.get("/category")
def get_categories(db: Session = Depends(get_db)):
    return registry.lookup_table(db, Category)


@router.post("/category")
def create_category(category: str = Query(...), db: Session = Depends(get_db)):
    category_id = registry.add_category(db, category)
    db.commit()
    return JSONResponse(status_code=201, content={"id": category_id})


@router.put("/category/{category}")
def rename_category(category: str, body: CategoryName = Body(...), db: Session = Depends(get_db)):
    category_id = registry.rename_category(db, category, body.category)
    db.commit()
    return {"id": category_id, "name": body.category}


@router.get("/qualifier")
def get_qualifiers(db: Session = Depends(get_db)):
    return registry.lookup_table(db, Qualifier)


@router.get("/status")
def get_statuses(db: Session = Depends(get_db)):
    return registry.lookup_table(db, Status)
