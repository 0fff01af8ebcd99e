"""Data source registry and static lookup-table resolution."""
from __future__ import annotations
import logging
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cluster_review.errors import RecordNotExist
from cluster_review.infrastructure.db import dialect_insert
from cluster_review.models.tables import DataSource, Category, Qualifier, Status

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "unknown"
DEFAULT_QUALIFIER = "unknown"
BENIGN = "benign"
PENDING_REVIEW = "pending review"
REVIEWED = "reviewed"

SEED_CATEGORIES = ("unknown",)
SEED_QUALIFIERS = ("benign", "unknown", "suspicious")
SEED_STATUSES = ("reviewed", "pending review", "disabled")


def get_data_source_id(session: Session, name: str) -> int:
    ds_id = session.execute(select(DataSource.id).where(DataSource.topic_name == name)).scalar()
    if ds_id is None:
        raise RecordNotExist("data source", name)
    return ds_id


def find_data_source_id(session: Session, name: str) -> int | None:
    return session.execute(select(DataSource.id).where(DataSource.topic_name == name)).scalar()


def get_or_create_data_source(session: Session, name: str, data_type: str) -> int:
    """Return the id for ``name``, registering it on first reference.

    Concurrent first references race on the unique topic name; the loser's
    insert is a no-op and it reads back the winner's row.
    """
    existing = find_data_source_id(session, name)
    if existing is not None:
        return existing
    stmt = dialect_insert(session, DataSource).values(topic_name=name, data_type=data_type)
    session.execute(stmt.on_conflict_do_nothing(index_elements=["topic_name"]))
    session.flush()
    ds_id = get_data_source_id(session, name)
    logger.info("registered data source %s (id=%s, type=%s)", name, ds_id, data_type)
    return ds_id


def list_data_sources(session: Session) -> list[dict]:
    rows = session.execute(select(DataSource).order_by(DataSource.id)).scalars().all()
    return [{"id": r.id, "topic_name": r.topic_name, "data_type": r.data_type} for r in rows]


def get_category_id(session: Session, name: str) -> int:
    cid = session.execute(select(Category.id).where(Category.name == name)).scalar()
    if cid is None:
        raise RecordNotExist("category", name)
    return cid


def add_category(session: Session, name: str) -> int:
    """Register a category; adding an existing name returns its id."""
    stmt = dialect_insert(session, Category).values(name=name)
    session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
    session.flush()
    return get_category_id(session, name)


def rename_category(session: Session, current: str, new: str) -> int:
    cid = get_category_id(session, current)
    session.execute(update(Category).where(Category.id == cid).values(name=new))
    logger.info("renamed category %s -> %s", current, new)
    return cid


def get_qualifier_id(session: Session, description: str) -> int:
    qid = session.execute(select(Qualifier.id).where(Qualifier.description == description)).scalar()
    if qid is None:
        raise RecordNotExist("qualifier", description)
    return qid


def get_status_id(session: Session, description: str) -> int:
    sid = session.execute(select(Status.id).where(Status.description == description)).scalar()
    if sid is None:
        raise RecordNotExist("status", description)
    return sid


def lookup_table(session: Session, model) -> list[dict]:
    label = Category.name if model is Category else model.description
    rows = session.execute(select(model.id, label).order_by(model.id)).all()
    key = "name" if model is Category else "description"
    return [{"id": r[0], key: r[1]} for r in rows]


def seed_lookup_tables(session: Session) -> None:
    """Insert the fixed category/qualifier/status rows if missing (idempotent)."""
    for model, column, values in (
        (Category, "name", SEED_CATEGORIES),
        (Qualifier, "description", SEED_QUALIFIERS),
        (Status, "description", SEED_STATUSES),
    ):
        for v in values:
            stmt = dialect_insert(session, model).values(**{column: v})
            session.execute(stmt.on_conflict_do_nothing(index_elements=[column]))
    session.commit()
