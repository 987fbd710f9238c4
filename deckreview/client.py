"""httpx client for the job and credit API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .credentials import CredentialProvider
from .errors import ApiError, AuthenticationError, InsufficientCreditsError, JobNotFoundError

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)


class JobApiClient:
    """Every call carries a fresh credential; a 401 triggers one refresh-and-retry."""

    def __init__(self, http: httpx.Client, credentials: CredentialProvider) -> None:
        self.http = http
        self.credentials = credentials

    def _request(
        self, method: str, path: str, timeout: Optional[float] = None, **kwargs
    ) -> httpx.Response:
        extra = {} if timeout is None else {"timeout": timeout}
        for attempt in (1, 2):
            credential = self.credentials.get_valid_credential()
            headers = {"Authorization": f"Bearer {credential.access_token}", "Accept": "application/json"}
            response = self.http.request(method, path, headers=headers, **extra, **kwargs)
            if response.status_code != 401:
                break
            if attempt == 1:
                logger.info("%s %s returned 401; refreshing credential and retrying", method, path)
                self.credentials.invalidate()
        else:
            raise AuthenticationError(
                f"Authentication required. Please log in and try again. ({_error_message(response)})"
            )

        if response.status_code == 402:
            body = response.json()
            raise InsufficientCreditsError(
                int(body.get("currentBalance", 0)), int(body.get("requiredCredits", 0))
            )
        if response.status_code == 404:
            raise JobNotFoundError(_error_message(response))
        if response.status_code >= 400:
            raise ApiError(
                f"{method} {path} failed: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    def create_job(self, file_name: str, file_size: int, page_count: int) -> str:
        response = self._request(
            "POST",
            "/jobs",
            json={"fileName": file_name, "fileSize": file_size, "pageCount": page_count},
        )
        return response.json()["jobId"]

    def dispatch_analysis(
        self,
        job_id: str,
        page_asset_urls: Sequence[str],
        file_name: str,
        file_size: int,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        response = self._request(
            "POST",
            f"/jobs/{job_id}/analyze",
            timeout=timeout,
            json={
                "jobId": job_id,
                "pageAssetUrls": list(page_asset_urls),
                "fileName": file_name,
                "fileSize": file_size,
            },
        )
        return response.json()

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/jobs/{job_id}").json()

    def get_job_result(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/jobs/{job_id}/result").json()

    def mark_failed(self, job_id: str, error_message: str) -> Dict[str, Any]:
        return self._request(
            "POST", f"/jobs/{job_id}/fail", json={"errorMessage": error_message}
        ).json()

    def get_balance(self) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", "/credits/balance").json()
        except JobNotFoundError:
            return None

    def get_history(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return self._request(
            "GET", "/credits/history", params={"limit": limit, "offset": offset}
        ).json()

    def deduct(
        self, amount: int, description: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/credits/deduct",
            json={"amount": amount, "description": description, "metadata": metadata or {}},
        ).json()

    def add(
        self,
        amount: int,
        transaction_type: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/credits/add",
            json={
                "amount": amount,
                "transactionType": transaction_type,
                "description": description,
                "metadata": metadata or {},
            },
        ).json()
