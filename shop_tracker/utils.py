"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session and applying retry policies to network calls.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from . import config
from .errors import TransportError

logger = logging.getLogger(__name__)


def get_http_session(cookie: str | None = None, user_agent: str | None = None) -> requests.Session:
    """Return a new HTTP session carrying the shop session cookie.

    Caller is responsible for closing the session or letting it be
    garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": user_agent or config.USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }
    )
    if cookie:
        session.headers["Cookie"] = cookie
    return session


class _RetryableStatus(TransportError):
    """Server-side status worth another attempt."""


def _check(response: Response) -> Response:
    # Redirects are never followed: a redirect from the shop means the
    # session cookie has expired and we landed on the login flow.
    if 300 <= response.status_code < 400:
        raise TransportError(
            f"{response.request.method} {response.url} redirected to "
            f"{response.headers.get('Location', '?')} (session expired?)"
        )
    if response.status_code >= 500:
        raise _RetryableStatus(f"Server returned status {response.status_code} for {response.url}")
    try:
        response.raise_for_status()
    except requests.RequestException as e:
        raise TransportError(str(e)) from e
    return response


def checked_request(method: Callable[..., Response]) -> Callable[..., Response]:
    """Decorator for single-attempt HTTP calls.

    Used for requests with remote side effects (region selection, CDN
    upload, webhook delivery).  Network errors and non-2xx statuses are
    raised as `TransportError`.
    """

    @functools.wraps(method)
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        kwargs.setdefault("timeout", config.HTTP_TIMEOUT)
        kwargs.setdefault("allow_redirects", False)
        try:
            response = method(session, url, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"request to {url} failed: {e}") from e
        return _check(response)

    return wrapper


def retryable_request(method: Callable[..., Response]) -> Callable[..., Response]:
    """Decorator factory to apply retry logic to idempotent HTTP calls.

    The decorated function must accept a `requests.Session` as its first
    argument, followed by URL and optional kwargs, and return a
    `requests.Response`.  Retries are attempted for network errors and
    HTTP status >= 500, up to `HTTP_RETRIES` attempts with exponential
    back-off between 1 and 10 seconds.  Other failures are raised at once.
    """
    checked = checked_request(method)

    @retry(
        reraise=True,
        stop=stop_after_attempt(config.HTTP_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(_RetryableStatus),
        after=after_log(logger, logging.WARNING),
    )
    @functools.wraps(method)
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        try:
            return checked(session, url, **kwargs)
        except TransportError as e:
            if isinstance(e.__cause__, (requests.ConnectionError, requests.Timeout)):
                raise _RetryableStatus(str(e)) from e.__cause__
            raise

    return wrapper


__all__ = ["get_http_session", "checked_request", "retryable_request"]
