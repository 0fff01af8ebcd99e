"""Error taxonomy shared by the store, the backfill pipeline and the HTTP layer.

Every user-visible failure is rendered as ``{"message": str(exc)}`` with an
HTTP 500 status; there is no machine-readable error code.
"""
from __future__ import annotations


class ReviewError(Exception):
    """Base class for all domain errors."""


class RecordNotExist(ReviewError):
    """A referenced lookup key (data source, qualifier, category, status, external id) did not resolve."""

    def __init__(self, kind: str, key: object):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} does not exist: {key}")


class NothingAffected(ReviewError):
    """A write request resolved to zero writable rows."""

    def __init__(self, message: str = "no record was affected"):
        super().__init__(message)


class DecodeError(ReviewError):
    """A stored member-id blob could not be decoded."""


class FramingError(ReviewError):
    """An upstream log record did not match the expected batch framing."""


class UpstreamUnavailable(ReviewError):
    """The upstream log could not be reached or read."""


class MessageNotFound(ReviewError):
    """No record exists at the requested (partition, offset)."""

    def __init__(self, topic: str, partition: int, offset: int):
        self.topic = topic
        self.partition = partition
        self.offset = offset
        super().__init__(f"no message at {topic}[{partition}]@{offset}")
