from __future__ import annotations

import random
from typing import Any, Mapping

import requests

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0
MAX_JITTER_SECONDS = 0.25
MIN_RETRY_AFTER_SECONDS = 1.0
USER_AGENT = "calmirror/0.1"


class HttpError(RuntimeError):
    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str = "",
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.headers = {str(key).lower(): str(value) for key, value in (headers or {}).items()}

    @property
    def retry_after_seconds(self) -> float | None:
        raw = self.headers.get("retry-after", "").strip()
        if not raw:
            return None
        try:
            value = float(raw)
        except ValueError:
            return None
        return max(MIN_RETRY_AFTER_SECONDS, value)


def is_retryable_status(status: int | None) -> bool:
    return status in RETRYABLE_STATUSES


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, HttpError):
        return is_retryable_status(exc.status)
    return isinstance(exc, (requests.Timeout, requests.ConnectionError))


def backoff_seconds(attempt: int) -> float:
    exponent = max(0, int(attempt) - 1)
    delay = min(BASE_DELAY_SECONDS * (2**exponent), MAX_DELAY_SECONDS)
    return delay + random.uniform(0, MAX_JITTER_SECONDS)


def retry_delay_seconds(error: BaseException | None, attempt: int) -> float:
    """Delay before the next attempt; a Retry-After hint wins over the computed backoff."""
    if isinstance(error, HttpError):
        hinted = error.retry_after_seconds
        if hinted is not None:
            return hinted
    return backoff_seconds(attempt)


class HttpClient:
    def __init__(self, timeout_seconds: float = 20, headers: Mapping[str, str] | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.headers = {"User-Agent": USER_AGENT, **dict(headers or {})}

    def request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> requests.Response:
        response = requests.request(
            method,
            url,
            params=params,
            json=json_body,
            headers={**self.headers, **dict(headers or {})},
            timeout=self.timeout_seconds,
        )
        if response.status_code >= 400:
            raise HttpError(
                f"{method.upper()} {url} failed with HTTP {response.status_code}",
                status=response.status_code,
                body=response.text[:2000],
                headers=response.headers,
            )
        return response

    def get_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        payload = self.request("GET", url, **kwargs).json()
        if not isinstance(payload, dict):
            raise HttpError(f"GET {url} returned a non-object JSON body")
        return payload

    def get_text(self, url: str, **kwargs: Any) -> str:
        return self.request("GET", url, **kwargs).text
