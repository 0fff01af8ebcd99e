from __future__ import annotations
from cluster_review.infrastructure import db as dbinfra


def get_db():
    db = dbinfra.get_session()
    try:
        yield db
    finally:
        db.close()
