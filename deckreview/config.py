"""Configuration defaults for deckreview."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError

# Default locations; can be overridden via CLI args or DECKREVIEW_* variables.
DEFAULT_DB_PATH = Path("deckreview.db")
DEFAULT_DATA_ROOT = Path("data")
DEFAULT_STATE_DIR = Path(".deckreview") / "uploads"

DEFAULT_BUCKET = "slide-images"
DEFAULT_BASE_URL = "http://127.0.0.1:8000"

UPLOAD_STATE_TTL_SECONDS = 24 * 60 * 60
MAX_PAGES = 20
MAX_FILE_SIZE = 15 * 1024 * 1024
SIGNED_URL_EXPIRY_SECONDS = 3600
TOKEN_TTL_SECONDS = 3600
TOKEN_REFRESH_THRESHOLD_SECONDS = 120
INTER_PAGE_DELAY_SECONDS = 0.5
PAGE_LATENCY_SECONDS = 20.0
DISPATCH_TIMEOUT_FLOOR_SECONDS = 600.0
POLL_INTERVAL_SECONDS = 2.0
OFFLINE_WAIT_SECONDS = 300.0
CREDITS_PER_PAGE = 1


@dataclass
class Config:
    """Settings shared by the API server, the worker and the CLI."""

    db_path: Path = DEFAULT_DB_PATH
    data_root: Path = DEFAULT_DATA_ROOT
    state_dir: Path = DEFAULT_STATE_DIR
    bucket: str = DEFAULT_BUCKET
    base_url: str = DEFAULT_BASE_URL
    secret: Optional[str] = None
    analysis_endpoint: Optional[str] = None
    analysis_api_key: Optional[str] = field(default=None, repr=False)
    max_pages: int = MAX_PAGES
    max_file_size: int = MAX_FILE_SIZE
    signed_url_expiry: int = SIGNED_URL_EXPIRY_SECONDS
    token_ttl: int = TOKEN_TTL_SECONDS
    inter_page_delay: float = INTER_PAGE_DELAY_SECONDS
    dispatch_timeout_floor: float = DISPATCH_TIMEOUT_FLOOR_SECONDS
    poll_interval: float = POLL_INTERVAL_SECONDS
    credits_per_page: int = CREDITS_PER_PAGE

    @property
    def storage_root(self) -> Path:
        return self.data_root / "storage"

    def validate(self) -> "Config":
        if not self.secret:
            raise ConfigurationError(
                "DECKREVIEW_SECRET is not set; it is required to sign tokens and asset URLs"
            )
        if self.max_pages < 1:
            raise ConfigurationError("max_pages must be at least 1")
        if self.credits_per_page < 1:
            raise ConfigurationError("credits_per_page must be at least 1")
        if self.analysis_endpoint and not self.analysis_api_key:
            raise ConfigurationError(
                "DECKREVIEW_ANALYSIS_API_KEY is required when an analysis endpoint is configured"
            )
        return self


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def load_config(env: Optional[Mapping[str, str]] = None, **overrides) -> Config:
    """Build a Config from DECKREVIEW_* variables, then apply explicit overrides."""
    env = os.environ if env is None else env
    config = Config(
        db_path=Path(env.get("DECKREVIEW_DB_PATH", DEFAULT_DB_PATH)),
        data_root=Path(env.get("DECKREVIEW_DATA_ROOT", DEFAULT_DATA_ROOT)),
        state_dir=Path(env.get("DECKREVIEW_STATE_DIR", DEFAULT_STATE_DIR)),
        bucket=env.get("DECKREVIEW_BUCKET", DEFAULT_BUCKET),
        base_url=env.get("DECKREVIEW_BASE_URL", DEFAULT_BASE_URL),
        secret=env.get("DECKREVIEW_SECRET"),
        analysis_endpoint=env.get("DECKREVIEW_ANALYSIS_ENDPOINT"),
        analysis_api_key=env.get("DECKREVIEW_ANALYSIS_API_KEY"),
        max_pages=_read_int(env, "DECKREVIEW_MAX_PAGES", MAX_PAGES),
        inter_page_delay=_read_float(env, "DECKREVIEW_INTER_PAGE_DELAY", INTER_PAGE_DELAY_SECONDS),
        poll_interval=_read_float(env, "DECKREVIEW_POLL_INTERVAL", POLL_INTERVAL_SECONDS),
        credits_per_page=_read_int(env, "DECKREVIEW_CREDITS_PER_PAGE", CREDITS_PER_PAGE),
    )
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    return config
