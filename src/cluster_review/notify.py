"""Publishes where downstream consumers can find the benign signatures of a data source.

The value written to etcd is a URL into this service's own cluster list,
filtered to benign clusters of one data source. Delivery is best effort:
the qualifier change has already committed by the time this runs.
"""
from __future__ import annotations
import base64
import json
import logging
import requests
from prometheus_client import Counter

from cluster_review.config import get_settings

logger = logging.getLogger(__name__)

NOTIFICATIONS = Counter('benign_notifications_total', 'Benign-signature notifications sent to etcd', ['outcome'])


def benign_signature_entry(data_source: str, public_addr: str | None = None) -> tuple[str, str]:
    addr = public_addr or get_settings().public_addr
    key = f"benign_signatures_{data_source}"
    flt = json.dumps({"qualifier": ["benign"], "data_source": [data_source]})
    return key, f"http://{addr}/api/cluster?filter={flt}"


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def etcd_put(key: str, value: str) -> bool:
    """PUT one key through the etcd v3 JSON gateway. Returns False if disabled or failed."""
    s = get_settings()
    if not s.etcd_addr:
        NOTIFICATIONS.labels(outcome='disabled').inc()
        logger.debug("etcd not configured; dropping %s", key)
        return False
    try:
        resp = requests.post(
            f"http://{s.etcd_addr}/v3/kv/put",
            json={"key": _b64(key), "value": _b64(value)},
            timeout=s.etcd_timeout_seconds,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        NOTIFICATIONS.labels(outcome='error').inc()
        logger.warning("etcd put of %s failed: %s", key, exc)
        return False
    NOTIFICATIONS.labels(outcome='ok').inc()
    return True


def notify_benign(data_sources) -> int:
    sent = 0
    for ds in sorted(set(data_sources)):
        key, value = benign_signature_entry(ds)
        if etcd_put(key, value):
            sent += 1
    return sent
