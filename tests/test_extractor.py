import io
import subprocess
from pathlib import Path

import pytest
from PIL import Image

from deckreview import extractor
from deckreview.errors import ExtractionError


def _write_png(path: Path, size=(200, 100), color="white"):
    Image.new("RGB", size, color).save(path, format="PNG")


def _fake_pdftoppm(page_sizes, broken_page=None):
    def run(cmd, capture_output, text):
        prefix = Path(cmd[-1])
        for number, size in enumerate(page_sizes, start=1):
            target = prefix.parent / f"{prefix.name}-{number}.png"
            if number == broken_page:
                target.write_bytes(b"not an image")
            else:
                _write_png(target, size)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    return run


def test_single_image_becomes_one_jpeg_page(tmp_path):
    source = tmp_path / "slide.png"
    _write_png(source, (640, 480))

    pages = extractor.extract(source)

    assert len(pages) == 1
    assert pages[0].page_number == 1
    assert (pages[0].width, pages[0].height) == (640, 480)
    with Image.open(io.BytesIO(pages[0].data)) as img:
        assert img.format == "JPEG"


def test_pdf_pages_are_returned_in_page_order(tmp_path, monkeypatch):
    source = tmp_path / "deck.pdf"
    source.write_bytes(b"%PDF-1.4")
    sizes = [(100 + n, 50) for n in range(1, 12)]
    monkeypatch.setattr(extractor.subprocess, "run", _fake_pdftoppm(sizes))
    events = []

    pages = extractor.extract(source, events.append)

    assert [page.page_number for page in pages] == list(range(1, 12))
    assert [page.width for page in pages] == [size[0] for size in sizes]
    assert events[0].status == "processing"
    assert events[-1].status == "complete"
    assert events[-1].total_pages == 11


def test_large_pages_are_downscaled(tmp_path):
    source = tmp_path / "poster.png"
    _write_png(source, (4096, 1024))

    page = extractor.extract(source)[0]

    assert max(page.width, page.height) == extractor.MAX_DIMENSION
    assert (page.width, page.height) == (2048, 512)


def test_one_bad_page_aborts_extraction(tmp_path, monkeypatch):
    source = tmp_path / "deck.pdf"
    source.write_bytes(b"%PDF-1.4")
    monkeypatch.setattr(
        extractor.subprocess, "run", _fake_pdftoppm([(100, 100)] * 3, broken_page=2)
    )
    events = []

    with pytest.raises(ExtractionError, match="page 2"):
        extractor.extract(source, events.append)
    assert events[-1].status == "error"


def test_missing_pdftoppm_is_reported(tmp_path, monkeypatch):
    source = tmp_path / "deck.pdf"
    source.write_bytes(b"%PDF-1.4")

    def missing(*args, **kwargs):
        raise FileNotFoundError("pdftoppm")

    monkeypatch.setattr(extractor.subprocess, "run", missing)

    with pytest.raises(ExtractionError, match="not installed"):
        extractor.extract(source)


def test_unsupported_extension(tmp_path):
    source = tmp_path / "notes.docx"
    source.write_bytes(b"data")

    with pytest.raises(ExtractionError):
        extractor.extract(source)
