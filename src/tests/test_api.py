import pytest
from fastapi.testclient import TestClient

from main import create_app
from conftest import ScriptedSource, page


@pytest.fixture
def client(settings, services, two_sources):
    app = create_app(settings, services)
    with TestClient(app) as client:
        yield client


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["queue"] == {"pending": 0, "leased": 0, "complete": 0, "failed": 0, "recent_failed": 0}


def test_health_degrades_on_backlog(client, services, registry):
    services.settings.health_pending_threshold = 1
    client.post("/scans", json={"projectId": "p1"})
    data = client.get("/health").json()
    assert data["status"] == "degraded"
    assert data["queue"]["pending"] == 2


def test_create_scan_is_accepted(client):
    resp = client.post("/scans", json={"projectId": "p1", "sources": ["reddit", "twitter"], "requestedBy": "u1"})
    assert resp.status_code == 202
    data = resp.json()
    assert data["scanId"]
    assert data["platforms"] == ["reddit", "twitter"]
    assert resp.headers["X-Trace-Id"]


def test_create_scan_without_active_sources(client):
    resp = client.post("/scans", json={"projectId": "p1", "sources": ["mastodon"]})
    assert resp.status_code == 422
    data = resp.json()
    assert data["success"] is False
    assert data["error_type"] == "NoActiveSources"


def test_create_scan_requires_project(client):
    resp = client.post("/scans", json={"sources": ["reddit"]})
    assert resp.status_code == 422


def test_second_running_scan_conflicts(client):
    assert client.post("/scans", json={"projectId": "p1"}).status_code == 202
    resp = client.post("/scans", json={"projectId": "p1"})
    assert resp.status_code == 409
    assert resp.json()["error_type"] == "ScanAlreadyRunning"


def test_scan_status_shape(client, services):
    scan_id = client.post("/scans", json={"projectId": "p1"}).json()["scanId"]
    job = services.job_store.claim_next("w1", 60)
    services.job_store.ack(job.job_id, 5)

    resp = client.get(f"/scans/{scan_id}/status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["progressPercent"] == 50
    assert data["allComplete"] is False
    assert data["scan"]["scanId"] == scan_id
    assert data["scan"]["status"] == "running"
    assert data["scan"]["totalDiscovered"] == 5
    assert data["scan"]["platforms"] == {"reddit": "complete", "twitter": "running"}
    assert [p["platform"] for p in data["platforms"]] == ["reddit", "twitter"]


def test_unknown_scan_is_404(client):
    for path in ("/scans/nope/status", "/scans/nope/jobs"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert resp.json()["error_type"] == "ScanNotFound"
    assert client.post("/scans/nope/cancel").status_code == 404


def test_scan_jobs_listing(client):
    scan_id = client.post("/scans", json={"projectId": "p1", "sources": ["twitter"]}).json()["scanId"]
    jobs = client.get(f"/scans/{scan_id}/jobs").json()
    assert len(jobs) == 1
    assert jobs[0]["platform"] == "twitter"
    assert jobs[0]["status"] == "pending"
    assert jobs[0]["maxAttempts"] == 3


def test_cancel_scan(client):
    scan_id = client.post("/scans", json={"projectId": "p1"}).json()["scanId"]
    resp = client.post(f"/scans/{scan_id}/cancel")
    assert resp.status_code == 202
    data = resp.json()
    assert data["allComplete"] is True
    assert data["scan"]["cancelRequested"] is True
    assert {p["error"] for p in data["platforms"]} == {"cancelled"}


def test_scan_history(client, services, registry):
    registry.register(ScriptedSource("hackernews", page(1)))
    first = client.post("/scans", json={"projectId": "p1", "sources": ["hackernews"]}).json()["scanId"]
    job = services.job_store.claim_next("w1", 60)
    services.job_store.ack(job.job_id, 1)
    second = client.post("/scans", json={"projectId": "p1", "sources": ["reddit"]}).json()["scanId"]

    resp = client.get("/scans", params={"projectId": "p1"})
    assert resp.status_code == 200
    assert [scan["scanId"] for scan in resp.json()] == [second, first]
    assert client.get("/scans", params={"projectId": "other"}).json() == []


def test_health_reports_open_circuits(client, services):
    for _ in range(3):
        services.breaker.record_failure("reddit")
    circuits = client.get("/health").json()["circuits"]
    assert circuits["reddit"]["open"] is True
    assert circuits["reddit"]["failures"] == 3


def test_unhandled_error_uses_json_envelope(settings, services):
    app = create_app(settings, services)

    @app.get("/explode")
    def explode():
        raise RuntimeError("kaboom")

    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.get("/explode")
    assert resp.status_code == 500
    data = resp.json()
    assert data["success"] is False
    assert data["error"] == "kaboom"
    assert data["trace_id"]
