"""Filesystem-backed object storage with time-bounded signed URLs."""

from __future__ import annotations

import hashlib
import hmac
import logging
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional
from urllib.parse import parse_qs, quote, unquote, urlsplit

from . import config
from .errors import SignedUrlError

logger = logging.getLogger(__name__)


def page_key(job_id: str, page_number: int) -> str:
    return f"{job_id}/page_{page_number}.jpg"


class LocalObjectStore:
    """One bucket stored under ``root/<bucket>/``.

    Objects are private; access from outside the process goes through
    :meth:`create_signed_url`, which the API's storage route verifies.
    """

    def __init__(
        self,
        root: Path,
        signing_secret: str,
        bucket: str = config.DEFAULT_BUCKET,
        base_url: str = config.DEFAULT_BASE_URL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not signing_secret:
            raise ValueError("signing_secret is required")
        self.bucket = bucket
        self.base_url = base_url.rstrip("/")
        self.bucket_dir = Path(root) / bucket
        self._secret = signing_secret.encode("utf-8")
        self._clock = clock

    def _object_path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or ".." in parts:
            raise ValueError(f"Invalid object key: {key!r}")
        return self.bucket_dir.joinpath(*parts)

    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        """Write an object; an existing object under the same key is overwritten."""
        path = self._object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.part")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        logger.debug("Stored %s/%s (%s, %s bytes)", self.bucket, key, content_type, len(data))

    def exists(self, key: str) -> bool:
        return self._object_path(key).is_file()

    def read(self, key: str) -> bytes:
        path = self._object_path(key)
        if not path.is_file():
            raise FileNotFoundError(f"{self.bucket}/{key}")
        return path.read_bytes()

    def list(self, prefix: str) -> List[str]:
        """Names of the objects directly under ``prefix``."""
        directory = self._object_path(prefix.rstrip("/"))
        if not directory.is_dir():
            return []
        return sorted(
            entry.name
            for entry in directory.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        )

    def delete_prefix(self, prefix: str) -> int:
        directory = self._object_path(prefix.rstrip("/"))
        if not directory.is_dir():
            return 0
        removed = len(self.list(prefix))
        shutil.rmtree(directory)
        logger.info("Deleted %s objects under %s/%s", removed, self.bucket, prefix)
        return removed

    def _sign(self, key: str, expires: int) -> str:
        message = f"{self.bucket}/{key}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def create_signed_url(
        self, key: str, expires_in: int = config.SIGNED_URL_EXPIRY_SECONDS
    ) -> str:
        if not self.exists(key):
            raise FileNotFoundError(f"{self.bucket}/{key}")
        expires = int(self._clock()) + expires_in
        token = self._sign(key, expires)
        return (
            f"{self.base_url}/storage/{self.bucket}/{quote(key)}"
            f"?expires={expires}&token={token}"
        )

    def verify_signed_url(self, url: str, now: Optional[float] = None) -> str:
        """Return the object key a signed URL grants access to."""
        parts = urlsplit(url)
        prefix = f"/storage/{self.bucket}/"
        if not parts.path.startswith(prefix):
            raise SignedUrlError(f"URL is not for bucket {self.bucket}")
        key = unquote(parts.path[len(prefix):])
        query = parse_qs(parts.query)
        try:
            expires = int(query["expires"][0])
            token = query["token"][0]
        except (KeyError, IndexError, ValueError) as exc:
            raise SignedUrlError("Signed URL is missing its token or expiry") from exc
        return self.verify_token(key, expires, token, now=now)

    def verify_token(self, key: str, expires: int, token: str, now: Optional[float] = None) -> str:
        if not hmac.compare_digest(self._sign(key, expires), token):
            raise SignedUrlError("Signed URL token does not match")
        current = self._clock() if now is None else now
        if current > expires:
            raise SignedUrlError("Signed URL has expired")
        return key

    def is_url_valid(self, url: str, min_remaining: float = 0.0) -> bool:
        try:
            self.verify_signed_url(url, now=self._clock() + min_remaining)
        except SignedUrlError:
            return False
        return True
