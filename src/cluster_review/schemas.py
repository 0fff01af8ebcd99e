from __future__ import annotations
from typing import Annotated
from pydantic import BaseModel, Field, AliasChoices, field_validator

from cluster_review.member_ids import U64_MAX

MessageId = Annotated[int, Field(ge=0, le=U64_MAX)]


class ClusterReport(BaseModel):
    """One aggregate report from the clustering pipeline."""
    cluster_id: str = Field(validation_alias=AliasChoices("cluster_id", "external_id"))
    detector_id: int | None = None
    signature: str | None = None
    score: float | None = None
    data_source: str
    data_source_type: str | None = None
    size: int | None = Field(None, ge=0)
    event_ids: list[MessageId] = Field(default_factory=list, validation_alias=AliasChoices("event_ids", "member_ids"))


class QualifierUpdate(BaseModel):
    cluster_id: str = Field(validation_alias=AliasChoices("cluster_id", "external_id"))
    data_source: str
    qualifier: str


class ClusterEdit(BaseModel):
    cluster_id: str | None = Field(None, validation_alias=AliasChoices("cluster_id", "new_external_id"))
    category: str | None = None
    qualifier: str | None = None

    def is_empty(self) -> bool:
        return self.cluster_id is None and self.category is None and self.qualifier is None


class OutlierReport(BaseModel):
    outlier: bytes
    data_source: str
    data_source_type: str | None = None
    event_ids: list[MessageId] = Field(default_factory=list, validation_alias=AliasChoices("event_ids", "member_ids"))

    @field_validator("outlier", mode="before")
    @classmethod
    def _payload_bytes(cls, v):
        # the pipeline sends the payload as a JSON array of byte values
        if isinstance(v, list):
            return bytes(v)
        if isinstance(v, str):
            return v.encode("utf-8")
        return v


class PositionIn(BaseModel):
    data_source_id: int
    partition: int
    offsets: int
    message_ids: tuple[MessageId, MessageId]


class EventPayloadIn(BaseModel):
    """A payload fetched by an external collector for a message id the store is waiting on."""
    data_source: str
    message_id: MessageId
    raw_event: str


class CategoryName(BaseModel):
    category: str = Field(min_length=1)
