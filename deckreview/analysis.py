"""Analysis backends called by the worker, one page at a time."""

from __future__ import annotations

import io
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
import pytesseract
from PIL import Image

from .errors import AnalysisError, SignedUrlError
from .storage import LocalObjectStore

logger = logging.getLogger(__name__)

DENSE_WORDS_PER_PAGE = 120
SPARSE_WORDS_PER_PAGE = 15


class PageAnalyzer(Protocol):
    def analyze_page(self, page_number: int, image_url: str) -> Dict[str, Any]:
        ...

    def aggregate(self, pages: List[Dict[str, Any]]) -> Dict[str, Any]:
        ...


def _get_bytes(client: httpx.Client, url: str) -> bytes:
    response = client.get(url)
    response.raise_for_status()
    return response.content


def store_fetcher(
    store: LocalObjectStore, http: Optional[httpx.Client] = None
) -> Callable[[str], bytes]:
    """Read our own signed URLs straight from the store; fetch anything else over HTTP."""

    def fetch(url: str) -> bytes:
        try:
            key = store.verify_signed_url(url)
        except SignedUrlError:
            if http is not None:
                return _get_bytes(http, url)
            with httpx.Client(timeout=60.0) as client:
                return _get_bytes(client, url)
        return store.read(key)

    return fetch


class TesseractPageAnalyzer:
    """Local OCR backend: page text via Tesseract, deck statistics on aggregate."""

    def __init__(self, fetch: Callable[[str], bytes], lang: str = "eng") -> None:
        self._fetch = fetch
        self.lang = lang

    def analyze_page(self, page_number: int, image_url: str) -> Dict[str, Any]:
        data = self._fetch(image_url)
        with Image.open(io.BytesIO(data)) as img:
            text = pytesseract.image_to_string(img, lang=self.lang)
        text = text.strip()
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        title = lines[0][:80] if lines else f"Page {page_number}"
        return {
            "pageNumber": page_number,
            "title": title,
            "content": text,
            "wordCount": len(text.split()),
        }

    def aggregate(self, pages: List[Dict[str, Any]]) -> Dict[str, Any]:
        analyzed = [page for page in pages if page]
        if not analyzed:
            raise AnalysisError("No page produced any content")

        word_counts = [int(page.get("wordCount", len(page.get("content", "").split()))) for page in analyzed]
        total_words = sum(word_counts)
        average = total_words / len(analyzed)
        if average > DENSE_WORDS_PER_PAGE:
            density = "Too Dense"
        elif average < SPARSE_WORDS_PER_PAGE:
            density = "Too Sparse"
        else:
            density = "Balanced"

        return {
            "pageCount": len(pages),
            "analyzedPages": len(analyzed),
            "failedPages": len(pages) - len(analyzed),
            "totalWords": total_words,
            "averageWordsPerPage": round(average, 1),
            "wordDensityAssessment": density,
            "emptyPages": [
                page["pageNumber"] for page in analyzed if not page.get("content")
            ],
        }


class HttpPageAnalyzer:
    """Remote inference service; its request and response bodies are passed through as-is."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        http: Optional[httpx.Client] = None,
        timeout: float = 120.0,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._http.post(f"{self.endpoint}{path}", json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise AnalysisError(f"Analysis service unreachable: {exc}") from exc
        if response.status_code == 429:
            logger.warning("Analysis service rate limited request to %s", path)
            raise AnalysisError("Analysis service rate limit exceeded")
        if response.status_code >= 400:
            raise AnalysisError(f"Analysis service error: {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise AnalysisError("Analysis service returned invalid JSON") from exc

    def analyze_page(self, page_number: int, image_url: str) -> Dict[str, Any]:
        result = self._post("/pages", {"pageNumber": page_number, "imageUrl": image_url})
        result.setdefault("pageNumber", page_number)
        return result

    def aggregate(self, pages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._post("/aggregate", {"pages": pages})

    def close(self) -> None:
        if self._owns_http:
            self._http.close()
