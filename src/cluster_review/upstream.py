"""Upstream log client (Kafka).

Each Kafka record value is a Fluentd forward-mode batch encoded as JSON::

    [tag, [[time, {"message": <payload>, ...}], ...]]

``time`` is the producer-assigned, monotonically increasing message id and
``message`` the raw event. One record therefore carries many messages; they
share the record's (partition, offset).
"""
from __future__ import annotations
import json
import logging
from kafka import KafkaConsumer, TopicPartition
from kafka.errors import KafkaError
from prometheus_client import Counter

from cluster_review.config import get_settings, parse_bootstrap_servers
from cluster_review.errors import FramingError, MessageNotFound, UpstreamUnavailable
from cluster_review.member_ids import U64_MAX
from cluster_review.mirror import LogMessage

logger = logging.getLogger(__name__)

UPSTREAM_RECORDS = Counter('upstream_records_consumed_total', 'Kafka records read from the upstream log', ['mode'])
UPSTREAM_UNDECODABLE = Counter('upstream_records_undecodable_total', 'Kafka records skipped because framing did not decode')


def _payload_bytes(message) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    if isinstance(message, list) and all(isinstance(b, int) and 0 <= b <= 255 for b in message):
        return bytes(message)
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def decode_record(value: bytes | None, partition: int | None = None, offset: int | None = None) -> list[LogMessage]:
    """Split one upstream record into messages.

    Raises ``FramingError`` when the record itself is not a batch; entries
    without a usable id or ``message`` are dropped one by one.
    """
    if value is None:
        raise FramingError("empty record")
    try:
        batch = json.loads(value)
    except (ValueError, UnicodeDecodeError) as exc:
        raise FramingError(f"record is not JSON: {exc}") from exc
    if not (isinstance(batch, list) and len(batch) >= 2 and isinstance(batch[1], list)):
        raise FramingError("record is not a forward-mode batch")
    out: list[LogMessage] = []
    for entry in batch[1]:
        if not (isinstance(entry, list) and len(entry) >= 2 and isinstance(entry[1], dict)):
            continue
        ident = entry[0]
        if isinstance(ident, bool) or not isinstance(ident, int) or not 0 <= ident <= U64_MAX:
            continue
        message = entry[1].get("message")
        if message is None:
            continue
        out.append(LogMessage(identifier=ident, payload=_payload_bytes(message), partition=partition, offset=offset))
    return out


class UpstreamLog:
    """Thin wrapper over kafka-python consumers.

    ``fetch_recent`` reads through the consumer group and leaves offsets
    uncommitted until ``commit`` is called, after the caller has persisted
    what it read. ``fetch_at`` uses a group-less consumer pinned to one
    partition.
    """

    def __init__(self, settings=None):
        self.settings = settings or get_settings()
        self.bootstrap_servers = parse_bootstrap_servers(self.settings.kafka_bootstrap_servers)
        self._group_consumers: dict[str, KafkaConsumer] = {}
        self._seek_consumer: KafkaConsumer | None = None

    @property
    def configured(self) -> bool:
        return bool(self.bootstrap_servers)

    def _group_consumer(self, topic: str) -> KafkaConsumer:
        consumer = self._group_consumers.get(topic)
        if consumer is None:
            s = self.settings
            try:
                consumer = KafkaConsumer(
                    topic,
                    bootstrap_servers=self.bootstrap_servers,
                    group_id=s.kafka_consumer_group,
                    client_id=s.kafka_client_id,
                    enable_auto_commit=False,
                    auto_offset_reset='earliest',
                    consumer_timeout_ms=s.kafka_poll_timeout_ms,
                    max_partition_fetch_bytes=s.kafka_max_partition_fetch_bytes,
                )
            except KafkaError as exc:
                raise UpstreamUnavailable(f"cannot reach upstream log for {topic}: {exc}") from exc
            self._group_consumers[topic] = consumer
        return consumer

    def _seeker(self) -> KafkaConsumer:
        if self._seek_consumer is None:
            s = self.settings
            try:
                self._seek_consumer = KafkaConsumer(
                    bootstrap_servers=self.bootstrap_servers,
                    group_id=None,
                    client_id=f"{s.kafka_client_id}-seek",
                    enable_auto_commit=False,
                    consumer_timeout_ms=s.kafka_poll_timeout_ms,
                    max_partition_fetch_bytes=s.kafka_max_partition_fetch_bytes,
                )
            except KafkaError as exc:
                raise UpstreamUnavailable(f"cannot reach upstream log: {exc}") from exc
        return self._seek_consumer

    def _decode(self, record) -> list[LogMessage]:
        try:
            return decode_record(record.value, record.partition, record.offset)
        except FramingError as exc:
            UPSTREAM_UNDECODABLE.inc()
            logger.warning("skipping %s[%s]@%s: %s", record.topic, record.partition, record.offset, exc)
            return []

    def fetch_recent(self, topic: str, max_count: int) -> list[LogMessage]:
        """Read up to ``max_count`` unread records; returns their messages in log order."""
        consumer = self._group_consumer(topic)
        records = []
        try:
            while len(records) < max_count:
                polled = consumer.poll(timeout_ms=self.settings.kafka_poll_timeout_ms, max_records=max_count - len(records))
                if not polled:
                    break
                for recs in polled.values():
                    records.extend(recs)
        except KafkaError as exc:
            raise UpstreamUnavailable(f"poll failed for {topic}: {exc}") from exc
        UPSTREAM_RECORDS.labels(mode='recent').inc(len(records))
        records.sort(key=lambda r: (r.partition, r.offset))
        messages: list[LogMessage] = []
        for record in records:
            messages.extend(self._decode(record))
        return messages

    def fetch_at(self, topic: str, partition: int, offset: int) -> list[LogMessage]:
        """Messages of the single record stored at (partition, offset)."""
        consumer = self._seeker()
        tp = TopicPartition(topic, partition)
        try:
            consumer.assign([tp])
            consumer.seek(tp, offset)
            polled = consumer.poll(timeout_ms=self.settings.kafka_poll_timeout_ms, max_records=1)
        except KafkaError as exc:
            raise UpstreamUnavailable(f"fetch failed for {topic}[{partition}]@{offset}: {exc}") from exc
        for record in polled.get(tp, []):
            if record.offset == offset:
                UPSTREAM_RECORDS.labels(mode='position').inc()
                return self._decode(record)
        raise MessageNotFound(topic, partition, offset)

    def commit(self, topic: str) -> None:
        consumer = self._group_consumers.get(topic)
        if consumer is None:
            return
        try:
            consumer.commit()
        except KafkaError as exc:
            raise UpstreamUnavailable(f"offset commit failed for {topic}: {exc}") from exc

    def close(self) -> None:
        for consumer in self._group_consumers.values():
            consumer.close()
        self._group_consumers.clear()
        if self._seek_consumer is not None:
            self._seek_consumer.close()
            self._seek_consumer = None
