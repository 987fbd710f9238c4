import pytest

from deckreview import db, ledger, worker
from deckreview.errors import InvalidTransitionError


class FakeAnalyzer:
    def __init__(self, conn=None, job_id=None, failing_pages=(), aggregate_error=None):
        self.conn = conn
        self.job_id = job_id
        self.failing_pages = set(failing_pages)
        self.aggregate_error = aggregate_error
        self.calls = []
        self.progress_seen = []

    def analyze_page(self, page_number, image_url):
        self.calls.append((page_number, image_url))
        if self.conn is not None:
            job = db.get_job(self.conn, self.job_id)
            self.progress_seen.append((job.status, job.analyzed_page_count))
        if page_number in self.failing_pages:
            raise RuntimeError(f"model error on page {page_number}")
        return {
            "pageNumber": page_number,
            "title": f"Slide {page_number}",
            "content": "Quarterly revenue grew",
            "score": 7,
            "feedback": "Clear message",
        }

    def aggregate(self, pages):
        if self.aggregate_error is not None:
            raise self.aggregate_error
        return {"overallScore": 7, "pagesReviewed": len([page for page in pages if page])}


def _urls(count):
    return [f"https://assets.example/job/page_{n}.jpg" for n in range(1, count + 1)]


def test_pages_are_analyzed_in_order_with_delay(conn):
    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 3)
    analyzer = FakeAnalyzer(conn, job_id)
    sleeps = []

    summary = worker.run_job(
        conn, job_id, _urls(3), analyzer, inter_page_delay=0.5, sleep=sleeps.append
    )

    assert summary.status == "completed"
    assert [number for number, _ in analyzer.calls] == [1, 2, 3]
    assert sleeps == [0.5, 0.5]
    assert analyzer.progress_seen == [("processing", 0), ("processing", 1), ("processing", 2)]

    job = db.get_job(conn, job_id)
    assert job.status == "completed"
    assert job.analyzed_page_count == 3
    assert job.result_payload == {"overallScore": 7, "pagesReviewed": 3}
    results = db.list_page_results(conn, job_id)
    assert [result.title for result in results] == ["Slide 1", "Slide 2", "Slide 3"]
    assert results[0].image_url == _urls(3)[0]


def test_owner_is_charged_only_after_success(conn):
    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 3)

    summary = worker.run_job(conn, job_id, _urls(3), FakeAnalyzer(), sleep=lambda s: None)

    assert summary.credits_charged == 3
    assert ledger.get_balance(conn, "alice").credits_balance == 7
    latest = ledger.get_history(conn, "alice")[0]
    assert latest.amount == -3
    assert latest.description == "Analysis: deck.pdf (3 pages)"
    assert latest.metadata == {"fileName": "deck.pdf", "jobId": job_id, "pageCount": 3}


def test_single_page_failure_does_not_fail_job(conn):
    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 3)

    summary = worker.run_job(
        conn, job_id, _urls(3), FakeAnalyzer(failing_pages={2}), sleep=lambda s: None
    )

    assert summary.status == "completed"
    assert summary.pages_succeeded == 2
    assert summary.pages_failed == 1
    page_two = db.list_page_results(conn, job_id)[1]
    assert not page_two.succeeded
    assert page_two.title == "Page 2"


def test_unreadable_page_result_does_not_fail_job(conn):
    class NonNumericScoreAnalyzer(FakeAnalyzer):
        def analyze_page(self, page_number, image_url):
            result = super().analyze_page(page_number, image_url)
            if page_number == 2:
                result["score"] = "n/a"
            return result

    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 3)
    analyzer = NonNumericScoreAnalyzer()

    summary = worker.run_job(conn, job_id, _urls(3), analyzer, sleep=lambda s: None)

    assert summary.status == "completed"
    assert summary.pages_succeeded == 2
    assert summary.pages_failed == 1
    results = db.list_page_results(conn, job_id)
    assert [result.succeeded for result in results] == [True, False, True]
    assert results[1].score is None
    assert results[0].score == 7
    assert db.get_job(conn, job_id).result_payload == {"overallScore": 7, "pagesReviewed": 2}


def test_failed_job_is_never_charged(conn, monkeypatch):
    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 2)

    def fail_deduct(*args, **kwargs):
        raise AssertionError("failed jobs must not be charged")

    monkeypatch.setattr(worker.ledger, "deduct", fail_deduct)

    summary = worker.run_job(
        conn,
        job_id,
        _urls(2),
        FakeAnalyzer(aggregate_error=RuntimeError("aggregate timed out")),
        sleep=lambda s: None,
    )

    assert summary.status == "failed"
    assert summary.credits_charged == 0
    job = db.get_job(conn, job_id)
    assert job.status == "failed"
    assert "aggregate timed out" in job.error_message
    assert db.list_page_results(conn, job_id) == []
    assert ledger.get_balance(conn, "alice").credits_balance == 10


def test_all_pages_failing_fails_job(conn):
    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 2)

    summary = worker.run_job(
        conn, job_id, _urls(2), FakeAnalyzer(failing_pages={1, 2}), sleep=lambda s: None
    )

    assert summary.status == "failed"
    assert db.get_job(conn, job_id).status == "failed"
    assert ledger.get_balance(conn, "alice").credits_balance == 10


def test_settlement_shortfall_is_recorded_not_raised(conn):
    ledger.add(conn, "alice", 1, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 2)

    summary = worker.run_job(conn, job_id, _urls(2), FakeAnalyzer(), sleep=lambda s: None)

    assert summary.status == "completed"
    assert summary.credits_charged == 0
    assert summary.settlement_error == ledger.INSUFFICIENT_CREDITS
    assert ledger.get_balance(conn, "alice").credits_balance == 1


def test_terminal_jobs_cannot_be_reprocessed(conn):
    ledger.add(conn, "alice", 10, "purchase", "Credit pack")
    job_id = db.create_job(conn, "alice", "deck.pdf", 1024, 1)
    worker.run_job(conn, job_id, _urls(1), FakeAnalyzer(), sleep=lambda s: None)

    with pytest.raises(InvalidTransitionError):
        worker.run_job(conn, job_id, _urls(1), FakeAnalyzer(), sleep=lambda s: None)
    assert not db.mark_job_failed(conn, job_id, "late failure")
    assert db.get_job(conn, job_id).status == "completed"
    assert ledger.get_balance(conn, "alice").credits_balance == 9
