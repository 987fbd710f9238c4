import pytest
from fastapi.testclient import TestClient

from deckreview import db, ledger
from deckreview.api import create_app
from deckreview.config import Config
from deckreview.credentials import issue_token

SECRET = "test-secret"


class FakeAnalyzer:
    def __init__(self):
        self.calls = []

    def analyze_page(self, page_number, image_url):
        self.calls.append(page_number)
        return {"title": f"Slide {page_number}", "content": "text", "score": 8, "feedback": "Good"}

    def aggregate(self, pages):
        return {"overallScore": 8}


@pytest.fixture
def config(tmp_path):
    return Config(
        db_path=tmp_path / "deckreview.db",
        data_root=tmp_path / "data",
        secret=SECRET,
        inter_page_delay=0,
        max_pages=5,
    )


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def client(config, analyzer):
    return TestClient(create_app(config, analyzer=analyzer, sleep=lambda s: None))


def _auth(owner_id):
    return {"Authorization": f"Bearer {issue_token(owner_id, SECRET).access_token}"}


def _grant(config, owner_id, amount):
    conn = db.get_connection(config.db_path)
    ledger.add(conn, owner_id, amount, "purchase", "Credit pack")
    conn.close()


def _create_job(client, owner_id="alice", pages=2):
    r = client.post(
        "/jobs",
        json={"fileName": "deck.pdf", "fileSize": 2048, "pageCount": pages},
        headers=_auth(owner_id),
    )
    assert r.status_code == 200
    return r.json()["jobId"]


def _analyze_body(job_id, pages=2):
    return {
        "jobId": job_id,
        "pageAssetUrls": [f"https://assets.example/{job_id}/page_{n}.jpg" for n in range(1, pages + 1)],
        "fileName": "deck.pdf",
        "fileSize": 2048,
    }


def test_health_needs_no_auth(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_valid_token_are_rejected(client):
    assert client.get("/credits/balance").status_code == 401
    r = client.get("/credits/balance", headers={"Authorization": "Bearer alice.1.bogus"})
    assert r.status_code == 401


def test_job_access_is_scoped_to_owner(client):
    job_id = _create_job(client)

    r = client.get(f"/jobs/{job_id}", headers=_auth("alice"))
    assert r.status_code == 200
    assert r.json()["status"] == "pending"
    assert r.json()["pageCount"] == 2

    assert client.get(f"/jobs/{job_id}", headers=_auth("mallory")).status_code == 403
    assert client.get("/jobs/not-a-job", headers=_auth("alice")).status_code == 404


def test_page_limit_and_invalid_body(client):
    r = client.post(
        "/jobs",
        json={"fileName": "deck.pdf", "fileSize": 10, "pageCount": 6},
        headers=_auth("alice"),
    )
    assert r.status_code == 400

    r = client.post("/jobs", json={"fileName": "deck.pdf"}, headers=_auth("alice"))
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid request body"


def test_analyze_requires_credits(client, analyzer):
    job_id = _create_job(client, pages=2)

    r = client.post(f"/jobs/{job_id}/analyze", json=_analyze_body(job_id), headers=_auth("alice"))

    assert r.status_code == 402
    body = r.json()
    assert body["requiresUpgrade"] is True
    assert body["currentBalance"] == 0
    assert body["requiredCredits"] == 2
    assert analyzer.calls == []
    assert client.get(f"/jobs/{job_id}", headers=_auth("alice")).json()["status"] == "pending"


def test_analyze_runs_job_and_charges_owner(client, config, analyzer):
    _grant(config, "alice", 5)
    job_id = _create_job(client, pages=2)

    r = client.post(f"/jobs/{job_id}/analyze", json=_analyze_body(job_id), headers=_auth("alice"))

    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["creditsCharged"] == 2
    assert analyzer.calls == [1, 2]
    conn = db.get_connection(config.db_path)
    assets = db.list_page_assets(conn, job_id)
    conn.close()
    assert [asset.page_number for asset in assets] == [1, 2]
    assert assets[0].signed_url == _analyze_body(job_id)["pageAssetUrls"][0]

    result = client.get(f"/jobs/{job_id}/result", headers=_auth("alice")).json()
    assert result["result"] == {"overallScore": 8}
    assert [page["title"] for page in result["pages"]] == ["Slide 1", "Slide 2"]
    assert client.get("/credits/balance", headers=_auth("alice")).json()["creditsBalance"] == 3

    again = client.post(f"/jobs/{job_id}/analyze", json=_analyze_body(job_id), headers=_auth("alice"))
    assert again.status_code == 409


def test_analyze_rejects_mismatched_urls(client, config):
    _grant(config, "alice", 5)
    job_id = _create_job(client, pages=2)

    r = client.post(f"/jobs/{job_id}/analyze", json=_analyze_body(job_id, pages=1), headers=_auth("alice"))

    assert r.status_code == 400


def test_result_is_unavailable_until_completed(client):
    job_id = _create_job(client)

    assert client.get(f"/jobs/{job_id}/result", headers=_auth("alice")).status_code == 404


def test_fail_endpoint_never_overwrites_terminal_status(client):
    job_id = _create_job(client)

    first = client.post(f"/jobs/{job_id}/fail", json={"errorMessage": "upload aborted"}, headers=_auth("alice"))
    second = client.post(f"/jobs/{job_id}/fail", json={"errorMessage": "again"}, headers=_auth("alice"))

    assert first.json() == {"applied": True, "status": "failed"}
    assert second.json() == {"applied": False, "status": "failed"}
    status = client.get(f"/jobs/{job_id}", headers=_auth("alice")).json()
    assert status["errorMessage"] == "upload aborted"


def test_credit_endpoints(client):
    assert client.get("/credits/balance", headers=_auth("alice")).status_code == 404

    r = client.post(
        "/credits/add",
        json={"amount": 4, "transactionType": "purchase", "description": "Credit pack"},
        headers=_auth("alice"),
    )
    assert r.json() == {"success": True, "newBalance": 4}

    r = client.post(
        "/credits/deduct", json={"amount": 5, "description": "Too much"}, headers=_auth("alice")
    )
    assert r.status_code == 402
    assert r.json()["currentBalance"] == 4

    r = client.post(
        "/credits/deduct", json={"amount": 1, "description": "Single slide"}, headers=_auth("alice")
    )
    assert r.json() == {"success": True, "newBalance": 3}

    history = client.get("/credits/history", headers=_auth("alice")).json()
    assert [tx["amount"] for tx in history] == [-1, 4]

    r = client.post(
        "/credits/add",
        json={"amount": 1, "transactionType": "gift", "description": "Unknown"},
        headers=_auth("alice"),
    )
    assert r.status_code == 400


def test_storage_route_checks_signature(client):
    store = client.app.state.store
    store.put("job-1/page_1.jpg", b"jpeg-bytes")
    url = store.create_signed_url("job-1/page_1.jpg")
    path = url.split("127.0.0.1:8000", 1)[1]

    r = client.get(path)
    assert r.status_code == 200
    assert r.content == b"jpeg-bytes"

    assert client.get(path.replace("token=", "token=0")).status_code == 403


def test_default_remote_analyzer_is_closed_on_shutdown(tmp_path):
    config = Config(
        db_path=tmp_path / "deckreview.db",
        data_root=tmp_path / "data",
        secret=SECRET,
        analysis_endpoint="https://inference.example",
        analysis_api_key="key-123",
    )
    app = create_app(config)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert not app.state.analyzer._http.is_closed

    assert app.state.analyzer._http.is_closed
