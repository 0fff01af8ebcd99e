from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, BigInteger, DateTime, Float, ForeignKey, Index, LargeBinary, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column
from cluster_review.infrastructure.db import Base

# Message identifiers are unsigned 64-bit producer timestamps.
MessageId = Numeric(20, 0)


class DataSource(Base):
    __tablename__ = "data_source"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    topic_name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    data_type: Mapped[str] = mapped_column(String(64))


class Category(Base):
    __tablename__ = "category"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True)


class Qualifier(Base):
    __tablename__ = "qualifier"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(64), unique=True)


class Status(Base):
    __tablename__ = "status"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(64), unique=True)


class RawEvent(Base):
    """Local mirror of upstream payloads keyed by (data source, message id).

    ``raw_event`` stays NULL while the message id is known but its payload has
    not been pulled from the log yet.
    """
    __tablename__ = "event"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[Decimal] = mapped_column(MessageId)
    data_source_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_source.id"), index=True)
    raw_event: Mapped[bytes | None] = mapped_column(LargeBinary, default=None)
    partition: Mapped[int | None] = mapped_column(Integer, default=None)
    offset: Mapped[int | None] = mapped_column(BigInteger, default=None)

    __table_args__ = (
        Index("ux_event_message_data_source", "message_id", "data_source_id", unique=True),
    )


class KafkaMetadata(Base):
    """Exact log position of one upstream record and the id range it carries."""
    __tablename__ = "kafka_metadata"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_source_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_source.id"), index=True)
    partition: Mapped[int] = mapped_column(Integer)
    offsets: Mapped[int] = mapped_column(BigInteger)
    first_message_id: Mapped[Decimal] = mapped_column(MessageId)
    last_message_id: Mapped[Decimal] = mapped_column(MessageId)

    __table_args__ = (
        Index("ux_kafka_metadata_position", "data_source_id", "partition", "offsets", unique=True),
        Index("ix_kafka_metadata_range", "data_source_id", "first_message_id", "last_message_id"),
    )


class Cluster(Base):
    __tablename__ = "cluster"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_id: Mapped[str | None] = mapped_column(String(255), default=None)
    category_id: Mapped[int] = mapped_column(Integer, ForeignKey("category.id"))
    detector_id: Mapped[int] = mapped_column(Integer)
    event_ids: Mapped[bytes | None] = mapped_column(LargeBinary, default=None)
    raw_event_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("event.id"), default=None, index=True)
    qualifier_id: Mapped[int] = mapped_column(Integer, ForeignKey("qualifier.id"))
    status_id: Mapped[int] = mapped_column(Integer, ForeignKey("status.id"))
    signature: Mapped[str] = mapped_column(Text)
    size: Mapped[str] = mapped_column(String(32))
    score: Mapped[float | None] = mapped_column(Float, default=None)
    data_source_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_source.id"), index=True)
    last_modification_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    __table_args__ = (
        Index("ux_cluster_external_data_source", "cluster_id", "data_source_id", unique=True),
    )


class Outlier(Base):
    """An uncategorised event; its representative payload is its own content."""
    __tablename__ = "outlier"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raw_event: Mapped[bytes] = mapped_column(LargeBinary)
    # sha256 of raw_event; payloads can exceed what a btree index accepts
    digest: Mapped[str] = mapped_column(String(64))
    data_source_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_source.id"), index=True)
    event_ids: Mapped[bytes] = mapped_column(LargeBinary)
    size: Mapped[str] = mapped_column(String(32))

    __table_args__ = (
        Index("ux_outlier_digest_data_source", "digest", "data_source_id", unique=True),
    )


class RuntimeSetting(Base):
    """Operator-tunable values shared by API workers and the backfill worker."""
    __tablename__ = "runtime_setting"
    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255))
