import pytest

from deckreview.errors import SignedUrlError, UploadError
from deckreview.models import PageImage
from deckreview.storage import LocalObjectStore, page_key
from deckreview.uploader import AssetUploader

SECRET = "test-secret"


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def _pages(count):
    return [
        PageImage(page_number=n, data=f"page-{n}".encode(), width=10, height=10)
        for n in range(1, count + 1)
    ]


def test_signed_url_round_trip_and_expiry(tmp_path):
    clock = FakeClock()
    store = LocalObjectStore(tmp_path, SECRET, clock=clock)
    store.put("job-1/page_1.jpg", b"jpeg")

    url = store.create_signed_url("job-1/page_1.jpg", expires_in=60)

    assert url.startswith("http://127.0.0.1:8000/storage/slide-images/job-1/page_1.jpg?")
    assert store.verify_signed_url(url) == "job-1/page_1.jpg"
    assert store.is_url_valid(url, min_remaining=30)
    assert not store.is_url_valid(url, min_remaining=120)

    clock.now += 61
    with pytest.raises(SignedUrlError, match="expired"):
        store.verify_signed_url(url)


def test_tampered_signed_url_is_rejected(tmp_path):
    store = LocalObjectStore(tmp_path, SECRET)
    store.put("job-1/page_1.jpg", b"jpeg")
    store.put("job-1/page_2.jpg", b"jpeg")
    url = store.create_signed_url("job-1/page_1.jpg")

    with pytest.raises(SignedUrlError):
        store.verify_signed_url(url.replace("page_1", "page_2"))
    with pytest.raises(SignedUrlError):
        LocalObjectStore(tmp_path, "other-secret").verify_signed_url(url)


def test_store_rejects_keys_outside_bucket(tmp_path):
    store = LocalObjectStore(tmp_path, SECRET)

    with pytest.raises(ValueError):
        store.put("../escape.jpg", b"x")
    with pytest.raises(FileNotFoundError):
        store.create_signed_url("job-1/missing.jpg")


def test_upload_skips_pages_already_stored(tmp_path):
    store = LocalObjectStore(tmp_path, SECRET)
    for n in (1, 2, 3):
        store.put(page_key("job-1", n), b"earlier attempt")
    uploader = AssetUploader(store)
    events = []

    urls = uploader.upload(_pages(5), "job-1", events.append)

    assert len(urls) == 5
    assert uploader.last_summary == {"uploaded": 2, "skipped": 3}
    assert [store.verify_signed_url(url) for url in urls] == [page_key("job-1", n) for n in range(1, 6)]
    assert store.read(page_key("job-1", 1)) == b"earlier attempt"
    assert store.read(page_key("job-1", 5)) == b"page-5"
    statuses = [event.status for event in events]
    assert statuses.count("skipped") == 3
    assert statuses.count("uploaded") == 2
    assert statuses[-1] == "complete"


def test_upload_reuses_valid_resume_hint(tmp_path):
    store = LocalObjectStore(tmp_path, SECRET)
    store.put(page_key("job-1", 1), b"earlier attempt")
    hint = store.create_signed_url(page_key("job-1", 1))
    uploader = AssetUploader(store)

    urls = uploader.upload(_pages(2), "job-1", resume_hint=[hint])

    assert urls[0] == hint


def test_upload_gives_up_after_offline_timeout(tmp_path):
    clock = FakeClock()
    store = LocalObjectStore(tmp_path, SECRET)
    uploader = AssetUploader(
        store,
        is_online=lambda: False,
        offline_timeout=5,
        sleep=clock.sleep,
        clock=clock,
    )

    with pytest.raises(UploadError) as excinfo:
        uploader.upload(_pages(2), "job-1")

    assert excinfo.value.page_number == 1
    assert store.list("job-1") == []
    assert clock.now >= 1_000_005.0


def test_upload_resumes_when_network_returns(tmp_path):
    clock = FakeClock()
    answers = iter([False, False, True, True, True])
    store = LocalObjectStore(tmp_path, SECRET)
    uploader = AssetUploader(
        store,
        is_online=lambda: next(answers),
        offline_timeout=30,
        sleep=clock.sleep,
        clock=clock,
    )

    urls = uploader.upload(_pages(2), "job-1")

    assert len(urls) == 2
    assert store.list("job-1") == ["page_1.jpg", "page_2.jpg"]
