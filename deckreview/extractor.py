"""Render source documents to per-page JPEG images using pdftoppm and Pillow."""

from __future__ import annotations

import io
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from PIL import Image

from .errors import ExtractionError
from .models import PageImage

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".tif", ".tiff"}
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | {".pdf"}

MAX_DIMENSION = 2048
JPEG_QUALITY = 85
RENDER_DPI = 150


@dataclass
class ExtractionProgress:
    current_page: int
    total_pages: int
    status: str
    message: str = ""


ProgressCallback = Callable[[ExtractionProgress], None]


def extract(source_path: Path, on_progress: Optional[ProgressCallback] = None) -> List[PageImage]:
    """Return one downscaled JPEG per page, or raise ExtractionError.

    Any failing page aborts the whole extraction; partial results are never
    returned. Page-count limits are the caller's responsibility.
    """
    source_path = Path(source_path)
    suffix = source_path.suffix.lower()
    try:
        if suffix in IMAGE_EXTENSIONS:
            images = _extract_images([source_path], on_progress)
        elif suffix == ".pdf":
            with tempfile.TemporaryDirectory() as tmpdir:
                rendered = _rasterize_pdf(source_path, Path(tmpdir))
                images = _extract_images(rendered, on_progress)
        else:
            raise ExtractionError(f"Unsupported file extension: {suffix or '<none>'}")
    except ExtractionError as exc:
        _report(on_progress, ExtractionProgress(0, 0, "error", str(exc)))
        raise

    _report(
        on_progress,
        ExtractionProgress(len(images), len(images), "complete", "All pages processed successfully"),
    )
    return images


def _report(on_progress: Optional[ProgressCallback], progress: ExtractionProgress) -> None:
    if on_progress is not None:
        on_progress(progress)


def _rasterize_pdf(path: Path, workdir: Path) -> List[Path]:
    """Rasterize every PDF page to PNG and return the files in page order."""
    output_prefix = workdir / "page"
    cmd = ["pdftoppm", "-r", str(RENDER_DPI), "-png", str(path), str(output_prefix)]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ExtractionError("pdftoppm is not installed") from exc
    if proc.returncode != 0:
        raise ExtractionError(f"pdftoppm failed: {proc.stderr.strip()}")

    pages = sorted(workdir.glob(f"{output_prefix.name}-*.png"), key=_page_sort_key)
    if not pages:
        raise ExtractionError("No images produced from PDF rasterization")
    return pages


def _page_sort_key(path: Path) -> int:
    """Extract a numeric sort key from pdftoppm output filenames."""
    try:
        return int(path.stem.split("-")[-1])
    except ValueError:
        return 0


def _extract_images(paths: List[Path], on_progress: Optional[ProgressCallback]) -> List[PageImage]:
    total = len(paths)
    images: List[PageImage] = []
    for index, path in enumerate(paths, start=1):
        _report(
            on_progress,
            ExtractionProgress(index, total, "processing", f"Processing page {index} of {total}..."),
        )
        try:
            images.append(render_page(path, index))
        except (OSError, ValueError) as exc:
            raise ExtractionError(f"Failed to render page {index}: {exc}") from exc
    return images


def render_page(path: Path, page_number: int) -> PageImage:
    """Downscale one rendered page to MAX_DIMENSION and encode it as JPEG."""
    with Image.open(path) as img:
        img.load()
        page = img.convert("RGB")
    if page.width > MAX_DIMENSION or page.height > MAX_DIMENSION:
        page.thumbnail((MAX_DIMENSION, MAX_DIMENSION), Image.LANCZOS)

    buffer = io.BytesIO()
    page.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    logger.debug("Rendered page %s at %sx%s", page_number, page.width, page.height)
    return PageImage(page_number=page_number, data=buffer.getvalue(), width=page.width, height=page.height)

