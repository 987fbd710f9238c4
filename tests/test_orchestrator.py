import json

import httpx
import pytest

from deckreview.client import JobApiClient
from deckreview.credentials import CredentialProvider, local_refresher
from deckreview.errors import AuthenticationError, InsufficientCreditsError, JobNotFoundError
from deckreview.orchestrator import JobMeta, JobOrchestrator

SECRET = "test-secret"


class FakeJobServer:
    """Minimal stand-in for the job API, driven through httpx.MockTransport."""

    def __init__(self, analyze_response=None, unauthorized_first=0):
        self.analyze_response = analyze_response
        self.unauthorized_first = unauthorized_first
        self.requests = []
        self.failures = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unauthorized_first:
            self.unauthorized_first -= 1
            return httpx.Response(401, json={"detail": "Authentication required"})
        path = request.url.path
        if path == "/jobs" and request.method == "POST":
            return httpx.Response(200, json={"jobId": "job-1", "status": "pending"})
        if path.endswith("/analyze"):
            if callable(self.analyze_response):
                return self.analyze_response(request)
            return self.analyze_response
        if path.endswith("/fail"):
            self.failures.append(json.loads(request.content)["errorMessage"])
            return httpx.Response(200, json={"applied": True, "status": "failed"})
        if path == "/credits/deduct":
            return httpx.Response(
                402,
                json={"error": "Insufficient credits", "currentBalance": 1, "requiredCredits": 3},
            )
        return httpx.Response(404, json={"detail": "Job not found"})


def _api(server):
    http = httpx.Client(transport=httpx.MockTransport(server), base_url="http://api.test")
    return JobApiClient(http, CredentialProvider(local_refresher("alice", SECRET)))


def test_dispatch_timeout_scales_with_page_count():
    orchestrator = JobOrchestrator(_api(FakeJobServer()))

    assert orchestrator.dispatch_timeout(3) == 600.0
    assert orchestrator.dispatch_timeout(40) == 1230.0


def test_create_job_returns_server_id():
    server = FakeJobServer()
    orchestrator = JobOrchestrator(_api(server))

    assert orchestrator.create_job(JobMeta("deck.pdf", 2048, 3)) == "job-1"
    assert server.requests[0].headers["Authorization"].startswith("Bearer alice.")


def test_successful_dispatch_records_nothing():
    server = FakeJobServer(httpx.Response(200, json={"jobId": "job-1", "status": "completed"}))
    orchestrator = JobOrchestrator(_api(server))

    handle = orchestrator.dispatch("job-1", ["u1", "u2"], "deck.pdf", 2048)

    assert handle.wait(timeout=5)
    assert handle.response["status"] == "completed"
    assert handle.error is None
    assert server.failures == []
    body = json.loads(server.requests[0].content)
    assert body["pageAssetUrls"] == ["u1", "u2"]


def test_dispatch_timeout_marks_job_failed():
    def time_out(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    server = FakeJobServer(time_out)
    orchestrator = JobOrchestrator(_api(server))

    handle = orchestrator.dispatch("job-1", ["u1"], "deck.pdf", 2048)

    assert handle.wait(timeout=5)
    assert "timed out" in handle.error
    assert server.failures == [handle.error]


def test_dispatch_error_status_marks_job_failed():
    server = FakeJobServer(httpx.Response(500, json={"error": "worker crashed"}))
    orchestrator = JobOrchestrator(_api(server))

    handle = orchestrator.dispatch("job-1", ["u1"], "deck.pdf", 2048)

    assert handle.wait(timeout=5)
    assert "worker crashed" in handle.error
    assert len(server.failures) == 1


def test_client_retries_once_after_401():
    server = FakeJobServer(unauthorized_first=1)
    api = _api(server)

    assert api.create_job("deck.pdf", 10, 1) == "job-1"
    assert len(server.requests) == 2


def test_client_gives_up_after_second_401():
    api = _api(FakeJobServer(unauthorized_first=2))

    with pytest.raises(AuthenticationError):
        api.create_job("deck.pdf", 10, 1)


def test_client_maps_error_statuses():
    api = _api(FakeJobServer())

    with pytest.raises(InsufficientCreditsError) as excinfo:
        api.deduct(3, "Analysis")
    assert excinfo.value.current_balance == 1
    assert excinfo.value.required_credits == 3

    with pytest.raises(JobNotFoundError):
        api.get_job_status("missing")
    assert api.get_balance() is None
