from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from feedsync.errors import FetchError, ParseError, RateLimitedError, ServerError
from feedsync.models import FetchConfig


logger = logging.getLogger(__name__)

CALENDAR_ACCEPT = "text/calendar, application/ics, */*"
RATE_LIMIT_STATUSES = {429, 503}
TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)


def _declares_charset(response: requests.Response) -> bool:
    content_type = str(response.headers.get("Content-Type") or "")
    return "charset=" in content_type.lower()


class RemoteFetcher:
    """Fetches remote calendar payloads with bounded retries.

    Rate-limit responses back off in minutes, transport failures and other
    5xx responses in seconds. All share the same attempt budget. Client
    error statuses are raised immediately.
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or FetchConfig()
        self._sleep = sleep

    def rate_limit_delay(self, attempt: int) -> float:
        return min(
            self.config.rate_limit_backoff_cap_seconds,
            attempt * self.config.rate_limit_backoff_seconds,
        )

    def transient_delay(self, attempt: int) -> float:
        return attempt * self.config.transient_backoff_seconds

    def fetch_text(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> str:
        merged = {"Accept": CALENDAR_ACCEPT}
        merged.update(headers or {})
        response = self._request(url, headers=merged, params=params)
        # iCalendar defaults to UTF-8; requests would fall back to ISO-8859-1 for text/*.
        if not _declares_charset(response):
            response.encoding = "utf-8"
        return response.text

    def fetch_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        merged = {"Accept": "application/json"}
        merged.update(headers or {})
        response = self._request(url, headers=merged, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"Response from {url} is not valid JSON") from exc

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError):
            return self.rate_limit_delay(retry_state.attempt_number)
        return self.transient_delay(retry_state.attempt_number)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s, retrying in %.0fs (attempt %d/%d)",
            error,
            delay,
            retry_state.attempt_number,
            self.config.max_attempts,
        )

    def _attempt(
        self,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None,
    ) -> requests.Response:
        try:
            response = requests.get(
                url,
                headers=headers,
                params=params,
                timeout=self.config.timeout_seconds,
            )
        except TRANSIENT_ERRORS:
            raise
        except requests.RequestException as exc:
            raise FetchError(f"Request to {url} failed: {exc}", url=url) from exc

        if response.status_code in RATE_LIMIT_STATUSES:
            raise RateLimitedError(
                f"Rate limited by {url} (HTTP {response.status_code})",
                url=url,
                status_code=response.status_code,
            )
        if response.status_code >= 500:
            raise ServerError(
                f"HTTP {response.status_code} from {url}: {response.text[:200]}",
                url=url,
                status_code=response.status_code,
            )
        if not response.ok:
            raise FetchError(
                f"HTTP {response.status_code} from {url}: {response.text[:200]}",
                url=url,
                status_code=response.status_code,
            )
        return response

    def _request(
        self,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None,
    ) -> requests.Response:
        request_headers = {"User-Agent": self.config.user_agent}
        request_headers.update(headers)
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type((RateLimitedError, ServerError) + TRANSIENT_ERRORS),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            return retrying(self._attempt, url, request_headers, params)
        except TRANSIENT_ERRORS as exc:
            raise FetchError(
                f"Request to {url} failed after {self.config.max_attempts} attempts: {exc}",
                url=url,
            ) from exc
