"""List-query compiler for the review UI.

Turns the raw ``filter`` / ``select`` / ``page`` / ``per_page`` / ``orderby`` /
``order`` request parameters into a single SELECT that folds each row into a
JSON object on the database side, plus a COUNT sharing the same WHERE clause.

Caller values only ever reach the statement as bound parameters. Column and
table names come from the fixed maps on each :class:`Target`.

Malformed input degrades instead of failing: an unparseable or non-object
``filter`` matches every row, unknown filter keys are dropped, an unknown
``orderby`` means no ORDER BY and ``order`` is ignored without one.
"""
from __future__ import annotations
import json
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from sqlalchemy import Numeric, and_, cast, func, literal, or_, select
from sqlalchemy.orm import Session

from cluster_review.config import get_settings
from cluster_review.member_ids import U64_MAX, decode_or_empty
from cluster_review.models.tables import Category, Cluster, DataSource, Outlier, Qualifier, RawEvent, Status

PAYLOAD = "payload"
MEMBER_IDS = "member_ids"


@dataclass(frozen=True)
class Target:
    name: str
    source: Callable[[], Any]
    columns: Mapping[str, Any]
    filters: Mapping[str, Any]
    orderings: Mapping[str, Any]
    # keys whose values are binary and need decoding after the fetch
    binary: Mapping[str, str] = field(default_factory=dict)
    integer_filters: frozenset = frozenset()


def _cluster_source():
    return (
        Cluster.__table__
        .join(Category.__table__, Cluster.category_id == Category.id)
        .join(Qualifier.__table__, Cluster.qualifier_id == Qualifier.id)
        .join(Status.__table__, Cluster.status_id == Status.id)
        .join(DataSource.__table__, Cluster.data_source_id == DataSource.id)
        .outerjoin(RawEvent.__table__, Cluster.raw_event_id == RawEvent.id)
    )


def _outlier_source():
    return Outlier.__table__.join(DataSource.__table__, Outlier.data_source_id == DataSource.id)


CLUSTER = Target(
    name="cluster",
    source=_cluster_source,
    columns={
        "cluster_id": Cluster.cluster_id,
        "detector_id": Cluster.detector_id,
        "qualifier": Qualifier.description,
        "status": Status.description,
        "category": Category.name,
        "signature": Cluster.signature,
        "data_source": DataSource.topic_name,
        "size": Cluster.size,
        "score": Cluster.score,
        "event_ids": Cluster.event_ids,
        "last_modification_time": Cluster.last_modification_time,
        "raw_event": RawEvent.raw_event,
    },
    filters={
        "category": Category.name,
        "cluster_id": Cluster.cluster_id,
        "data_source": DataSource.topic_name,
        "detector_id": Cluster.detector_id,
        "status": Status.description,
        "qualifier": Qualifier.description,
    },
    orderings={
        "cluster_id": Cluster.cluster_id,
        "detector_id": Cluster.detector_id,
        "qualifier": Qualifier.description,
        "status": Status.description,
        "category": Category.name,
        "signature": Cluster.signature,
        "data_source": DataSource.topic_name,
        "size": cast(Cluster.size, Numeric),
        "score": Cluster.score,
        "event_ids": Cluster.event_ids,
        "last_modification_time": Cluster.last_modification_time,
    },
    binary={"event_ids": MEMBER_IDS, "raw_event": PAYLOAD},
    integer_filters=frozenset({"detector_id"}),
)

OUTLIER = Target(
    name="outlier",
    source=_outlier_source,
    columns={
        "outlier": Outlier.raw_event,
        "data_source": DataSource.topic_name,
        "size": Outlier.size,
        "event_ids": Outlier.event_ids,
    },
    filters={"data_source": DataSource.topic_name},
    orderings={
        "outlier": Outlier.raw_event,
        "data_source": DataSource.topic_name,
        "size": cast(Outlier.size, Numeric),
        "event_ids": Outlier.event_ids,
    },
    binary={"outlier": PAYLOAD, "event_ids": MEMBER_IDS},
)


@dataclass
class ListParams:
    filter: str | None = None
    select: str | None = None
    page: str | int | None = None
    per_page: str | int | None = None
    orderby: str | None = None
    order: str | None = None


@dataclass
class CompiledQuery:
    statement: Any
    count_statement: Any
    keys: list[str]
    page: int | None
    per_page: int
    paginated: bool


@dataclass
class ListResult:
    rows: list[dict]
    total: int | None = None
    total_pages: int | None = None

    def headers(self) -> dict[str, str]:
        if self.total is None:
            return {}
        return {"X-Reviewd-Total": str(self.total), "X-Reviewd-TotalPages": str(self.total_pages)}


def _positive_int(raw) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


def parse_page(raw) -> int | None:
    return _positive_int(raw)


def parse_per_page(raw, maximum: int) -> int | None:
    value = _positive_int(raw)
    if value is None:
        return None
    return min(value, maximum)


def _parse_json_object(raw) -> dict | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def build_where(target: Target, raw_filter):
    """AND across fields, OR across the values of one field; ``None`` when nothing applies.

    The filter is all-or-nothing: if any allow-listed key carries something
    other than a list of the right element type, no clause is built at all.
    """
    parsed = _parse_json_object(raw_filter)
    if not parsed:
        return None
    clauses = []
    for key, column in target.filters.items():
        values = parsed.get(key)
        if values is None:
            continue
        if not isinstance(values, list):
            return None
        check = _is_u64 if key in target.integer_filters else _is_text
        if not all(check(v) for v in values):
            return None
        if values:
            clauses.append(or_(*[column == v for v in values]))
    if not clauses:
        return None
    return and_(*clauses)


def _is_text(value) -> bool:
    return isinstance(value, str)


def _is_u64(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= U64_MAX


def selected_keys(target: Target, raw_select) -> list[str]:
    parsed = _parse_json_object(raw_select)
    keys = list(target.columns)
    if parsed is None:
        return keys
    chosen = [k for k in keys if parsed.get(k) is True]
    return chosen or keys


def _json_object(dialect: str, pairs: list[tuple[str, Any]]):
    args = []
    for key, expr in pairs:
        args.extend([literal(key), expr])
    if dialect == "postgresql":
        return func.json_build_object(*args)
    return func.json_object(*args)


def _hex(dialect: str, column):
    if dialect == "postgresql":
        return func.encode(column, literal("hex"))
    # sqlite renders hex(NULL) as ''
    return func.nullif(func.hex(column), literal(""))


def compile_list_query(target: Target, params: ListParams, dialect: str) -> CompiledQuery:
    s = get_settings()
    page = parse_page(params.page)
    per_page_given = parse_per_page(params.per_page, s.query_max_per_page)
    per_page = per_page_given or s.query_default_per_page
    keys = selected_keys(target, params.select)
    pairs = []
    for key in keys:
        column = target.columns[key]
        pairs.append((key, _hex(dialect, column) if key in target.binary else column))
    where = build_where(target, params.filter)

    stmt = select(_json_object(dialect, pairs).label("data")).select_from(target.source())
    count_stmt = select(func.count()).select_from(target.source())
    if where is not None:
        stmt = stmt.where(where)
        count_stmt = count_stmt.where(where)
    orderby = (params.orderby or "").lower()
    if orderby in target.orderings:
        column = target.orderings[orderby]
        stmt = stmt.order_by(column.desc() if (params.order or "").lower() == "desc" else column)
    stmt = stmt.limit(per_page).offset(((page or 1) - 1) * per_page)
    return CompiledQuery(
        statement=stmt,
        count_statement=count_stmt,
        keys=keys,
        page=page,
        per_page=per_page,
        paginated=page is not None or per_page_given is not None,
    )


def _render(target: Target, row: dict) -> dict:
    for key, kind in target.binary.items():
        if key not in row:
            continue
        raw = row[key]
        if raw is None:
            if kind == MEMBER_IDS:
                row[key] = []
            continue
        data = bytes.fromhex(raw)
        if kind == MEMBER_IDS:
            row[key] = decode_or_empty(data)
        else:
            row[key] = data.decode("utf-8", errors="replace")
    return row


def run_list_query(session: Session, target: Target, params: ListParams) -> ListResult:
    dialect = session.get_bind().dialect.name
    compiled = compile_list_query(target, params, dialect)
    rows = []
    for (data,) in session.execute(compiled.statement):
        obj = json.loads(data) if isinstance(data, str) else dict(data)
        rows.append(_render(target, obj))
    if not compiled.paginated:
        return ListResult(rows)
    total = session.execute(compiled.count_statement).scalar() or 0
    if total <= 0:
        return ListResult(rows)
    return ListResult(rows, total, math.ceil(total / compiled.per_page))
