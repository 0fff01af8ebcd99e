from __future__ import annotations

import pytest
from sqlalchemy import func, select

from cluster_review import registry
from cluster_review.errors import RecordNotExist
from cluster_review.models.tables import Category, DataSource, Qualifier, Status


def test_get_or_create_is_idempotent(session):
    first = registry.get_or_create_data_source(session, "ds1", "log")
    second = registry.get_or_create_data_source(session, "ds1", "log")
    session.commit()
    assert first == second
    assert session.execute(select(func.count(DataSource.id))).scalar() == 1


def test_get_unknown_data_source_raises(session):
    with pytest.raises(RecordNotExist) as exc:
        registry.get_data_source_id(session, "missing")
    assert "missing" in str(exc.value)
    assert registry.find_data_source_id(session, "missing") is None


def test_seed_is_repeatable(session):
    registry.seed_lookup_tables(session)
    registry.seed_lookup_tables(session)
    assert session.execute(select(func.count(Qualifier.id))).scalar() == 3
    assert session.execute(select(func.count(Status.id))).scalar() == 3
    assert session.execute(select(func.count(Category.id))).scalar() == 1


def test_lookup_resolution(session):
    assert registry.get_qualifier_id(session, "benign")
    assert registry.get_status_id(session, "pending review")
    with pytest.raises(RecordNotExist):
        registry.get_category_id(session, "nope")
    names = [row["description"] for row in registry.lookup_table(session, Qualifier)]
    assert set(names) == {"benign", "unknown", "suspicious"}


def test_add_category_is_idempotent(session):
    first = registry.add_category(session, "malware")
    assert registry.add_category(session, "malware") == first
    session.commit()
    assert registry.get_category_id(session, "malware") == first
    assert session.execute(select(func.count(Category.id))).scalar() == 2


def test_rename_category(session):
    cid = registry.add_category(session, "malware")
    assert registry.rename_category(session, "malware", "ransomware") == cid
    session.commit()
    assert registry.get_category_id(session, "ransomware") == cid
    with pytest.raises(RecordNotExist):
        registry.get_category_id(session, "malware")
    with pytest.raises(RecordNotExist):
        registry.rename_category(session, "nope", "other")
