"""HTTP plumbing shared by the API extractor and loader."""

import base64
import logging
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import (
    AuthenticationError,
    ConnectorError,
    DuplicateRecordError,
    RateLimitError,
    RecordValidationError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = [429, 500, 502, 503, 504]


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 1.0,
    headers: Optional[Dict[str, str]] = None
) -> requests.Session:
    """
    Create a requests session with transport-level retry.

    urllib3 retries idempotent requests on 429/5xx and honors
    ``Retry-After``. Once retries run out the last response is returned
    (``raise_on_status=False``) so ``check_response`` can classify it.
    """
    session = requests.Session()

    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=RETRY_STATUS_CODES,
        respect_retry_after_header=True,
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retries)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    session.headers["Content-Type"] = "application/json"
    if headers:
        session.headers.update(headers)

    return session


def auth_headers(token: Optional[str], auth_type: str = "bearer", header_name: str = "Authorization") -> Dict[str, str]:
    """Authentication headers for a token."""
    if not token:
        return {}

    if auth_type == "bearer":
        return {"Authorization": f"Bearer {token}"}
    elif auth_type == "basic":
        credentials = base64.b64encode(f"{token}:".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}
    elif auth_type == "header":
        return {header_name: token}

    return {}


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_message(response: requests.Response) -> str:
    """Best-effort human readable error from a response body."""
    try:
        body: Any = response.json()
    except ValueError:
        return response.text[:500] or response.reason or ""

    # Salesforce answers with a list of {"message", "errorCode"}
    if isinstance(body, list) and body and isinstance(body[0], dict):
        body = body[0]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)[:500]


def check_response(response: requests.Response, record_id: Optional[str] = None) -> None:
    """
    Translate an error status into the connector exception taxonomy.

    Raises:
        AuthenticationError: 401/403
        RateLimitError: 429 (carries Retry-After)
        DuplicateRecordError: 409
        RecordValidationError: 400/422
        TransientNetworkError: 5xx
        ConnectorError: Any other 4xx
    """
    status = response.status_code
    if status < 400:
        return

    message = error_message(response)

    if status in (401, 403):
        raise AuthenticationError(f"Authentication failed ({status}): {message}", status)
    if status == 429:
        raise RateLimitError(
            f"Rate limit exceeded: {message}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 409:
        raise DuplicateRecordError(message, record_id=record_id, status_code=status)
    if status in (400, 422):
        raise RecordValidationError(message, record_id=record_id, status_code=status)
    if status >= 500:
        raise TransientNetworkError(f"Server error ({status}): {message}", status)

    raise ConnectorError(f"HTTP {status}: {message}", status)


def send(
    session: requests.Session,
    method: str,
    url: str,
    record_id: Optional[str] = None,
    check: bool = True,
    **kwargs
) -> requests.Response:
    """
    Issue a request, turning transport failures into connector exceptions.

    Args:
        session: Session from ``create_session``
        method: HTTP method
        url: Absolute URL
        record_id: Source record id attached to per-record errors
        check: If False the response is returned without status translation
        **kwargs: Passed through to ``session.request``
    """
    try:
        response = session.request(method, url, **kwargs)
    except requests.exceptions.RetryError as e:
        if "429" in str(e):
            raise RateLimitError(f"Rate limit retries exhausted for {method} {url}") from e
        raise TransientNetworkError(f"Retries exhausted for {method} {url}: {e}") from e
    except (requests.Timeout, requests.ConnectionError) as e:
        raise TransientNetworkError(f"{method} {url} failed: {e}") from e

    if check:
        check_response(response, record_id)
    return response


class RateLimiter:
    """Spaces out requests to at most ``rate`` per second across threads."""

    def __init__(self, rate: Optional[float] = None):
        self.rate = rate or 0.0
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def wait(self) -> None:
        if self.rate <= 0:
            return
        with self._lock:
            elapsed = time.monotonic() - self._last_request_time
            wait_time = (1.0 / self.rate) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
            self._last_request_time = time.monotonic()
