"""Bearer tokens and the single place that keeps them fresh."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import jwt

from . import config
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class Credential:
    access_token: str
    owner_id: str
    expires_at: float

    def seconds_left(self, now: float) -> float:
        return self.expires_at - now


def issue_token(
    owner_id: str,
    secret: str,
    ttl: int = config.TOKEN_TTL_SECONDS,
    now: Optional[float] = None,
) -> Credential:
    if not owner_id:
        raise ValueError("Owner id is required")
    issued_at = int(time.time() if now is None else now)
    expires_at = issued_at + ttl
    payload = {"sub": owner_id, "iat": issued_at, "exp": expires_at}
    token = jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)
    return Credential(access_token=token, owner_id=owner_id, expires_at=expires_at)


def verify_token(token: str, secret: str, now: Optional[float] = None) -> str:
    """Return the owner id a token was issued to, or raise AuthenticationError.

    ``now`` pins the expiry check to a given clock instead of the wall clock.
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["exp", "sub"], "verify_exp": now is None},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Access token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid access token") from exc
    if now is not None and now >= int(payload["exp"]):
        raise AuthenticationError("Access token has expired")
    return str(payload["sub"])


class CredentialProvider:
    """Hands out credentials that will not expire mid-request.

    A credential that is missing, expired or within ``refresh_threshold``
    seconds of expiry is refreshed before it is returned.
    """

    def __init__(
        self,
        refresh: Callable[[Optional[Credential]], Credential],
        credential: Optional[Credential] = None,
        refresh_threshold: float = config.TOKEN_REFRESH_THRESHOLD_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._refresh = refresh
        self._credential = credential
        self.refresh_threshold = refresh_threshold
        self._clock = clock
        self._lock = threading.Lock()

    def get_valid_credential(self) -> Credential:
        with self._lock:
            credential = self._credential
            now = self._clock()
            if credential is not None and credential.seconds_left(now) >= self.refresh_threshold:
                return credential

            if credential is None:
                logger.info("No credential yet; requesting one")
            else:
                logger.info(
                    "Credential for %s expires in %.0fs; refreshing",
                    credential.owner_id,
                    credential.seconds_left(now),
                )
            try:
                refreshed = self._refresh(credential)
            except AuthenticationError:
                raise
            except Exception as exc:
                raise AuthenticationError(f"Session refresh failed: {exc}") from exc

            if refreshed is None or refreshed.seconds_left(self._clock()) <= 0:
                raise AuthenticationError("Session expired. Please log in and try again.")
            self._credential = refreshed
            return refreshed

    def invalidate(self) -> None:
        """Force a refresh on next use, e.g. after the server answered 401."""
        with self._lock:
            if self._credential is not None:
                self._credential = Credential(
                    access_token=self._credential.access_token,
                    owner_id=self._credential.owner_id,
                    expires_at=0,
                )


def local_refresher(owner_id: str, secret: str, ttl: int = config.TOKEN_TTL_SECONDS):
    """Refresh callback that mints tokens directly with the shared secret."""

    def refresh(_previous: Optional[Credential]) -> Credential:
        return issue_token(owner_id, secret, ttl=ttl)

    return refresh
