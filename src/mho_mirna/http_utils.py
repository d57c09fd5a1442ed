"""Shared HTTP session configuration with retry logic."""

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULT_USER_AGENT = "mho-mirna/0.1 (+https://www.ncbi.nlm.nih.gov/geo/)"


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 1.0,
    status_forcelist: tuple = (429, 500, 502, 503, 504),
    allowed_methods: tuple = ("GET", "POST"),
    timeout: float = 60.0,
    user_agent: str = DEFAULT_USER_AGENT,
) -> requests.Session:
    """
    Create a requests Session with retry logic and standard headers.

    Transient failures (connection errors, rate limiting, 5xx responses) are
    retried with exponential backoff before the error reaches the caller.

    Args:
        max_retries: Maximum retry attempts
        backoff_factor: Backoff multiplier between retries
        status_forcelist: HTTP status codes that trigger retries
        allowed_methods: HTTP methods that can be retried
        timeout: Default timeout (seconds) applied to every request
        user_agent: User-Agent header value

    Returns:
        Configured requests.Session
    """
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=allowed_methods,
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})
    session.request = _wrap_with_timeout(session.request, timeout=timeout)
    return session


def _wrap_with_timeout(request_method, timeout: float):
    def request_with_timeout(method, url, **kwargs):
        kwargs.setdefault("timeout", timeout)
        return request_method(method, url, **kwargs)

    return request_with_timeout
