"""HTTP infrastructure shared by the connectors.

Includes a rate limiter, an HTTP client that turns transport failures
into ``ServiceConnectionError``, and checks that classify malformed
responses (wrong MIME type, empty body, wrong charset) as distinct errors.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from typing import Any

import httpx

from citekey_resolver.errors import (
    EmptyResponseError,
    EncodingError,
    HTTPStatusError,
    MalformedResponseError,
    MimeTypeError,
    ServiceConnectionError,
)

DEFAULT_USER_AGENT = "citekey-resolver/0.1 (+https://github.com/citekey-resolver)"

UTF8_CHARSETS = frozenset({"utf-8", "utf8"})


# ------------- Rate Limiting -------------


class RateLimiter:
    """Allow at most ``req_per_min`` requests in any sliding minute.

    Shared by all threads that talk to one service.
    """

    WINDOW = 60.0

    def __init__(self, req_per_min: int) -> None:
        self.req_per_min = max(req_per_min, 1)
        self._lock = threading.Lock()
        self._sent: deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.WINDOW:
            self._sent.popleft()

    def wait(self) -> None:
        """Block until one more request fits into the window."""
        with self._lock:
            now = time.time()
            self._expire(now)
            if len(self._sent) >= self.req_per_min:
                time.sleep(self.WINDOW - (now - self._sent[0]) + 0.01)
                now = time.time()
                self._expire(now)
            self._sent.append(now)


# ------------- HTTP Client -------------


class HttpClient:
    """HTTP client with rate limiting and retries on throttling.

    Transport failures are never retried: they raise
    ``ServiceConnectionError`` right away, since the network is then
    assumed to be down for every other key as well. Only responses that
    ask the client to slow down (429, 503) are retried.
    """

    RETRYABLE_STATUS = {429, 503}

    def __init__(
        self,
        timeout: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
        rate_limiter: RateLimiter | None = None,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        """Initialize HTTP client.

        Args:
            timeout: Per-request timeout in seconds
            user_agent: User-Agent header value
            rate_limiter: Optional RateLimiter shared by all requests
            max_retries: How often to retry a throttled request
            transport: Optional httpx transport (e.g., a MockTransport in tests)
            logger: Logger instance (creates one if not provided)
        """
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.logger = logger or logging.getLogger(__name__)

    def get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """Make a GET request.

        Raises:
            ServiceConnectionError: If the request could not be sent or no
                response was received.
        """
        backoff = 1.0
        for attempt in range(self.max_retries + 1):
            if self.rate_limiter:
                self.rate_limiter.wait()
            self.logger.debug("GET %s %s", url, params or "")
            try:
                resp = self.client.get(url, params=params)
            except httpx.TransportError as e:
                raise ServiceConnectionError(url, str(e) or type(e).__name__) from e
            if resp.status_code not in self.RETRYABLE_STATUS or attempt == self.max_retries:
                return resp
            delay = _retry_after(resp, backoff)
            self.logger.debug("%s: HTTP %d, retrying in %.1fs", url, resp.status_code, delay)
            time.sleep(delay)
            backoff = min(backoff * 2, 16.0)
        raise AssertionError("unreachable")

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _retry_after(resp: httpx.Response, default: float) -> float:
    value = resp.headers.get("Retry-After", "")
    try:
        return min(float(value), 60.0)
    except ValueError:
        return default


# ------------- Response checks -------------


def _url(resp: httpx.Response) -> str:
    try:
        return str(resp.request.url)
    except RuntimeError:
        return ""


def parse_content_type(value: str | None) -> tuple[str | None, dict[str, str]]:
    """Split a Content-Type header into MIME type and parameters."""
    if not value:
        return None, {}
    mime_type, *rest = value.split(";")
    params = {}
    for param in rest:
        name, sep, val = param.partition("=")
        if sep:
            params[name.strip().lower()] = val.strip().strip('"')
    return mime_type.strip().lower() or None, params


def response_text(
    resp: httpx.Response,
    mime_type: str,
    require_charset: bool = False,
) -> str:
    """Check the shape of a response and return its body as text.

    Args:
        resp: The response.
        mime_type: The MIME type the response must have.
        require_charset: Whether the Content-Type must name a charset.

    Raises:
        HTTPStatusError: If the status is not 2xx.
        MimeTypeError: If the MIME type is missing or wrong.
        EmptyResponseError: If the body is empty.
        MalformedResponseError: If a charset is required but none is named.
        EncodingError: If the charset is not UTF-8 or the body is not UTF-8.
    """
    url = _url(resp)
    if not resp.is_success:
        raise HTTPStatusError(url, resp.status_code)
    got, params = parse_content_type(resp.headers.get("Content-Type"))
    if got != mime_type:
        raise MimeTypeError(url, mime_type, got)
    if not resp.content.strip():
        raise EmptyResponseError(url)
    charset = params.get("charset")
    if charset is None:
        if require_charset:
            raise MalformedResponseError(url, "response has no charset")
    elif charset.lower() not in UTF8_CHARSETS:
        raise EncodingError(url, charset)
    try:
        return resp.content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncodingError(url, "invalid UTF-8") from e


def response_json(
    resp: httpx.Response,
    mime_type: str,
    require_charset: bool = False,
) -> Any:
    """Like ``response_text``, but decode the body as JSON.

    Raises:
        MalformedResponseError: If the body is not valid JSON.
    """
    text = response_text(resp, mime_type, require_charset=require_charset)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(_url(resp), f"cannot parse JSON: {e}") from e
