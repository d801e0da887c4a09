"""
Source client abstraction.

A source client talks to one upstream and returns normalized Page values.
Clients implement the capabilities their upstream supports; everything else
raises UnsupportedOperation, which the orchestrator reports as a failed run.

HttpSourceClient adds what every HTTP-based client shares: a requests
session with a User-Agent, a minimum delay between requests, retry of
transient failures, and mapping of HTTP status codes onto the error taxonomy.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import get_logger, USER_AGENT
from ..sync.error_tracker import (
    NotFound, RateLimited, RequestFailed, TransientServerError, Unauthorized, UnsupportedOperation,
)
from ..sync.resilience import CircuitBreaker, RetryPolicy, with_retry

logger = get_logger(__name__)


@dataclass
class Page:
    """One fetched upstream page, before transformation."""
    slug: str
    title: str
    raw_content: Optional[str]
    pre_rendered_html: Optional[str] = None
    last_modified: Optional[datetime] = None
    source_metadata: Dict[str, Any] = field(default_factory=dict)


class SourceClient(ABC):
    """Capability set of an upstream source."""
    source: str = "unknown"

    @abstractmethod
    def fetch_page(self, slug: str) -> Page:
        """
        Fetch one page.

        Raises:
            NotFound, RateLimited, Unauthorized, TransientServerError, RequestFailed
        """

    def list_all_slugs(self, limit: Optional[int] = None) -> List[str]:
        raise UnsupportedOperation(f"{self.source} cannot list all pages", source_id=self.source)

    def list_changed_since(self, since: datetime, limit: Optional[int] = None) -> List[str]:
        raise UnsupportedOperation(f"{self.source} cannot list changed pages", source_id=self.source)

    def list_category(self, category: str, limit: Optional[int] = None) -> List[str]:
        raise UnsupportedOperation(f"{self.source} has no categories", source_id=self.source)

    def search(self, query: str, limit: Optional[int] = None) -> List[str]:
        raise UnsupportedOperation(f"{self.source} does not support search", source_id=self.source)

    def sync_mirror(self, full: bool = False) -> Optional[str]:
        """Bring a local mirror up to date; remote-only sources have nothing to do."""
        return None


def classify_status(status_code: int, url: str, source: Optional[str] = None) -> Optional[Exception]:
    """Map an HTTP status onto the error taxonomy; None for success."""
    if 200 <= status_code < 300:
        return None
    message = f"HTTP {status_code} from {url}"
    if status_code == 404:
        return NotFound(message, source_id=source)
    if status_code == 429:
        return RateLimited(message, source_id=source, recovery_suggestion="Increase rate_limit_ms for this source.")
    if status_code in (401, 403):
        return Unauthorized(message, source_id=source)
    if 500 <= status_code < 600:
        return TransientServerError(message, source_id=source, status_code=status_code)
    return RequestFailed(message, source_id=source)


class HttpSourceClient(SourceClient):
    """Base for clients that talk HTTP through a shared, throttled session."""

    def __init__(self, base_url: str, user_agent: str = USER_AGENT, rate_limit_ms: int = 1000, timeout: int = 30,
                 retry_policy: Optional[RetryPolicy] = None, circuit_breaker: Optional[CircuitBreaker] = None,
                 session: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip("/")
        self.rate_limit_ms = rate_limit_ms
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.circuit_breaker = circuit_breaker
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': user_agent,
            'Accept': 'application/json',
        })
        self._sleep = sleep
        self._throttle_lock = threading.Lock()
        self._last_request_at: Optional[float] = None

    def _throttle(self) -> None:
        """Block until ``rate_limit_ms`` has passed since the previous request."""
        if self.rate_limit_ms <= 0:
            return
        with self._throttle_lock:
            now = time.monotonic()
            if self._last_request_at is not None:
                wait = self._last_request_at + self.rate_limit_ms / 1000.0 - now
                if wait > 0:
                    self._sleep(wait)
            self._last_request_at = time.monotonic()

    def _send(self, url: str, params: Optional[Dict[str, Any]], headers: Optional[Dict[str, str]]) -> requests.Response:
        self._throttle()
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientServerError(f"Network error for {url}: {e}", source_id=self.source, network=True) from e
        error = classify_status(response.status_code, url, self.source)
        if error is not None:
            raise error
        return response

    def get(self, path_or_url: str, params: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """GET with politeness delay and retry of transient failures."""
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}{path_or_url}"
        logger.debug(f"GET {url}", extra={'details': {'source': self.source, 'params': params}})
        return with_retry(
            lambda: self._send(url, params, headers),
            policy=self.retry_policy,
            circuit_breaker=self.circuit_breaker,
            circuit_key=self.source,
            sleep=self._sleep,
        )

    def get_json(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self.get(path_or_url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise RequestFailed(f"Invalid JSON from {path_or_url}: {e}", source_id=self.source) from e
