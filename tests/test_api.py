import time

import pytest
from fastapi.testclient import TestClient

from renderflow.main import app, get_store

PLAN_BODY = {
    "plan": {
        "timeline": [
            {"asset_url": "https://cdn.example.com/a.mp4", "trim_start_ms": 0, "trim_end_ms": 5000},
        ],
        "audio_tracks": [
            {"asset_url": "https://cdn.example.com/music.mp3", "timeline_end_ms": 5000},
        ],
    }
}


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_submit_and_poll(client, store):
    r = client.post("/api/jobs", json=PLAN_BODY)
    assert r.status_code == 202
    body = r.json()
    assert body["state"] == "queued"
    assert body["progress_pct"] == 0
    assert body["output"] is None and body["error"] is None

    stored = store.get(body["job_id"])
    assert stored.input["plan"]["timeline"][0]["trim_end_ms"] == 5000
    assert stored.input["plan"]["audio_tracks"][0]["volume"] == 1.0

    r = client.get(f"/api/jobs/{body['job_id']}")
    assert r.status_code == 200
    assert r.json()["job_id"] == body["job_id"]


def test_status_returns_terminal_fields_verbatim(client, store):
    store.insert("done-job", {"source_url": "https://cdn.example.com/a.mp4"})
    store.claim_next("w")
    output = {"output_path": "/data/output/done-job.mp4", "output_url": "/outputs/done-job.mp4",
              "file_size": 1234, "duration_ms": 10000}
    store.mark_done("done-job", output)

    store.insert("failed-job", {"source_url": "https://cdn.example.com/b.mp4"})
    store.mark_fail("failed-job", {"code": "AssetDownload", "message": "HTTP 404", "detail": {"status_code": 404}})

    done = client.get("/api/jobs/done-job").json()
    assert done["state"] == "done" and done["progress_pct"] == 100
    assert done["output"] == output

    failed = client.get("/api/jobs/failed-job").json()
    assert failed["state"] == "failed"
    assert failed["error"] == {"code": "AssetDownload", "message": "HTTP 404", "detail": {"status_code": 404}}


def test_legacy_source_submission(client):
    r = client.post("/api/jobs", json={"source_url": "https://cdn.example.com/a.mp4", "trim": {"start": 0, "end": 5}})
    assert r.status_code == 202


def test_unknown_job_is_404(client):
    assert client.get("/api/jobs/does-not-exist").status_code == 404


@pytest.mark.parametrize("body", [
    {},
    {"plan": {"timeline": []}},
    {"plan": {"timeline": [{"asset_url": "https://x/a.mp4", "trim_start_ms": 5000, "trim_end_ms": 1000}]}},
    {"plan": {"timeline": [{"asset_url": "https://x/a.mp4"}], "mystery": 1}},
    {"source_url": "https://x/a.mp4", "trim": {"start": -1}},
])
def test_invalid_submissions_are_rejected(client, store, body):
    r = client.post("/api/jobs", json=body)
    assert r.status_code == 422
    assert store.list_recent() == []


@pytest.mark.parametrize("body", [
    {"source_url": "/etc/hostname"},
    {"source_url": "file:///etc/passwd"},
    {"plan": {"timeline": [
        {"asset_url": "https://cdn.example.com/a.mp4"},
        {"asset_url": "file:///var/lib/secret.mp4"},
    ]}},
    {"plan": {"timeline": [{"asset_url": "https://cdn.example.com/a.mp4"}],
              "audio_tracks": [{"asset_url": "/srv/media/private.mp3", "timeline_end_ms": 1000}]}},
])
def test_server_local_assets_are_rejected(client, store, body):
    r = client.post("/api/jobs", json=body)
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "Validation"
    assert store.list_recent() == []


def test_list_jobs_newest_first(client, store):
    ids = []
    for _ in range(3):
        ids.append(client.post("/api/jobs", json=PLAN_BODY).json()["job_id"])
        time.sleep(0.002)
    r = client.get("/api/jobs", params={"limit": 2})
    assert r.status_code == 200
    listed = [item["job_id"] for item in r.json()]
    assert listed == list(reversed(ids))[:2]
