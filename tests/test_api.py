from __future__ import annotations

import json

import pytest

from cluster_review import notify


@pytest.fixture
def etcd_calls(monkeypatch):
    calls = []

    def _put(key, value):
        calls.append((key, value))
        return True

    monkeypatch.setattr(notify, "etcd_put", _put)
    return calls


def _report_c1(client):
    resp = client.put("/api/cluster", json=[{
        "external_id": "c1", "detector_id": 1, "data_source": "ds1",
        "data_source_type": "t", "member_ids": [1, 2, 3],
    }])
    assert resp.status_code == 200
    return resp


def _get_c1(client):
    resp = client.get("/api/cluster", params={"filter": json.dumps({"cluster_id": ["c1"]})})
    assert resp.status_code == 200
    rows = resp.json()
    assert len(rows) == 1
    return rows[0]


def test_report_then_merge_scenario(client):
    _report_c1(client)
    row = _get_c1(client)
    assert row["size"] == "1"
    assert row["event_ids"] == [1, 2, 3]
    assert row["qualifier"] == "unknown"
    assert row["status"] == "pending review"

    resp = client.put("/api/cluster", json=[{"external_id": "c1", "data_source": "ds1", "member_ids": [4, 5], "size": 2}])
    assert resp.status_code == 200
    row = _get_c1(client)
    assert row["event_ids"] == [1, 2, 3, 4, 5]
    assert row["size"] == "3"


def test_report_with_unresolvable_data_source_is_500(client):
    resp = client.put("/api/cluster", json=[{"cluster_id": "c1", "data_source": "unknown-ds"}])
    assert resp.status_code == 500
    assert "message" in resp.json()


def test_benign_qualifier_sends_one_notification(client, etcd_calls):
    _report_c1(client)
    client.put("/api/cluster", json=[{"cluster_id": "c2", "data_source": "ds1"}])
    resp = client.put("/api/cluster/qualifier", json=[
        {"cluster_id": "c1", "data_source": "ds1", "qualifier": "benign"},
        {"cluster_id": "c2", "data_source": "ds1", "qualifier": "benign"},
    ])
    assert resp.status_code == 200
    assert [key for key, _ in etcd_calls] == ["benign_signatures_ds1"]
    value = etcd_calls[0][1]
    assert value.startswith("http://")
    assert '"qualifier": ["benign"]' in value
    row = _get_c1(client)
    assert row["qualifier"] == "benign"
    assert row["status"] == "reviewed"


def test_non_benign_qualifier_sends_nothing(client, etcd_calls):
    _report_c1(client)
    resp = client.put("/api/cluster/qualifier", json=[{"cluster_id": "c1", "data_source": "ds1", "qualifier": "suspicious"}])
    assert resp.status_code == 200
    assert etcd_calls == []


def test_qualifier_update_for_unknown_cluster_is_500(client, etcd_calls):
    resp = client.put("/api/cluster/qualifier", json=[{"cluster_id": "zz", "data_source": "ds1", "qualifier": "benign"}])
    assert resp.status_code == 500
    assert etcd_calls == []


def test_edit_without_fields_is_400(client):
    _report_c1(client)
    resp = client.put("/api/cluster/c1", params={"data_source": "ds1"}, json={})
    assert resp.status_code == 400
    assert "message" in resp.json()


def test_edit_to_benign_notifies(client, etcd_calls):
    _report_c1(client)
    resp = client.put("/api/cluster/c1", params={"data_source": "ds1"}, json={"qualifier": "benign"})
    assert resp.status_code == 200
    assert [key for key, _ in etcd_calls] == ["benign_signatures_ds1"]


def test_edit_with_unknown_category_is_500(client):
    _report_c1(client)
    resp = client.put("/api/cluster/c1", params={"data_source": "ds1"}, json={"category": "nope"})
    assert resp.status_code == 500
    assert resp.json() == {"message": "category does not exist: nope"}


def test_pagination_headers(client):
    client.put("/api/cluster", json=[
        {"cluster_id": f"c{i}", "data_source": "ds1", "data_source_type": "t"} for i in range(25)
    ])
    resp = client.get("/api/cluster", params={"page": "3", "per_page": "10"})
    assert len(resp.json()) == 5
    assert resp.headers["X-Reviewd-Total"] == "25"
    assert resp.headers["X-Reviewd-TotalPages"] == "3"
    plain = client.get("/api/cluster")
    assert "X-Reviewd-Total" not in plain.headers
    assert len(plain.json()) == 10


def test_outlier_roundtrip(client):
    resp = client.put("/api/outlier", json=[
        {"outlier": list(b"weird"), "data_source": "ds1", "data_source_type": "t", "event_ids": [9]},
    ])
    assert resp.status_code == 200
    rows = client.get("/api/outlier").json()
    assert rows == [{"outlier": "weird", "data_source": "ds1", "size": "1", "event_ids": [9]}]


def test_data_source_registration(client):
    first = client.post("/api/data_source", params={"data_source": "ds9", "data_type": "log"})
    second = client.post("/api/data_source", params={"data_source": "ds9", "data_type": "log"})
    assert first.status_code == 201
    assert first.json() == second.json()
    listed = client.get("/api/data_source").json()
    assert [d["topic_name"] for d in listed] == ["ds9"]
    assert client.get("/api/data_source", params={"data_source": "ds9"}).json()["id"] == first.json()["id"]


def test_lookup_tables(client):
    assert {q["description"] for q in client.get("/api/qualifier").json()} == {"benign", "unknown", "suspicious"}
    assert {s["description"] for s in client.get("/api/status").json()} == {"reviewed", "pending review", "disabled"}
    assert [c["name"] for c in client.get("/api/category").json()] == ["unknown"]


def test_member_id_cap_endpoints(client):
    _report_c1(client)
    assert client.get("/api/event_id").json() == {"max_event_id_num": 25}
    resp = client.put("/api/event_id", params={"max_event_id_num": 2})
    assert resp.json() == {"max_event_id_num": 2, "pruned": 1}
    assert _get_c1(client)["event_ids"] == [2, 3]
    assert client.put("/api/event_id", params={"max_event_id_num": 0}).status_code == 422


def test_position_metadata_and_waiting_events(client):
    _report_c1(client)
    ds_id = client.get("/api/data_source", params={"data_source": "ds1"}).json()["id"]
    resp = client.put("/api/kafka_metadata", json=[
        {"data_source_id": ds_id, "partition": 0, "offsets": 17, "message_ids": [1, 2]},
        {"data_source_id": ds_id, "partition": 0, "offsets": 17, "message_ids": [1, 2]},
    ])
    assert resp.json() == {"inserted": 1}
    assert client.get("/api/kafka_metadata", params={"data_source_id": ds_id}).json() == [
        {"data_source_id": ds_id, "partition": 0, "offsets": 17, "message_ids": [1, 2]},
    ]
    waiting = client.get("/api/event/no_raw_events", params={"data_source_id": ds_id}).json()
    assert waiting == {"message_ids": [1, 2, 3], "metadata": [[0, 17]]}


def test_external_payloads_link_waiting_cluster(client):
    _report_c1(client)
    resp = client.put("/api/event", json=[{"data_source": "ds1", "message_id": 3, "raw_event": "payload three"}])
    assert resp.json() == {"stored": 1, "linked": 1}
    assert _get_c1(client)["raw_event"] == "payload three"


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"db": True, "status": "ok"}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert b"api_requests_total" in resp.content


def test_category_add_rename_and_assign(client):
    _report_c1(client)
    created = client.post("/api/category", params={"category": "malware"})
    assert created.status_code == 201
    resp = client.put("/api/cluster/c1", params={"data_source": "ds1"}, json={"category": "malware"})
    assert resp.status_code == 200
    assert _get_c1(client)["category"] == "malware"

    renamed = client.put("/api/category/malware", json={"category": "ransomware"})
    assert renamed.json() == {"id": created.json()["id"], "name": "ransomware"}
    assert _get_c1(client)["category"] == "ransomware"
    assert {c["name"] for c in client.get("/api/category").json()} == {"unknown", "ransomware"}


def test_rename_unknown_category_is_500(client):
    resp = client.put("/api/category/nope", json={"category": "other"})
    assert resp.status_code == 500
    assert resp.json() == {"message": "category does not exist: nope"}


@pytest.mark.parametrize("member_ids", [[2**64], [-1], [1, 2**70]])
def test_out_of_range_member_ids_are_rejected(client, member_ids):
    resp = client.put("/api/cluster", json=[{
        "external_id": "c1", "data_source": "ds1", "data_source_type": "t", "member_ids": member_ids,
    }])
    assert resp.status_code == 422
    assert client.get("/api/cluster").json() == []


def test_largest_member_id_is_accepted(client):
    resp = client.put("/api/cluster", json=[{
        "external_id": "c1", "data_source": "ds1", "data_source_type": "t", "member_ids": [2**64 - 1],
    }])
    assert resp.status_code == 200
    assert _get_c1(client)["event_ids"] == [2**64 - 1]


def test_edit_without_data_source_is_400(client):
    _report_c1(client)
    resp = client.put("/api/cluster/c1", json={"qualifier": "suspicious"})
    assert resp.status_code == 400
    assert resp.json() == {"message": "data_source is required"}
