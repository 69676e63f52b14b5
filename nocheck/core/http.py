"""
Shared requests sessions for outbound calls (media upload, email, chat webhooks).
"""

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import HTTP_TIMEOUT_SEC

# (connect, read)
REQUEST_TIMEOUT = (min(HTTP_TIMEOUT_SEC, 10), HTTP_TIMEOUT_SEC)


def build_session(total_retries: int = 1) -> requests.Session:
    """Session with transport-level retry for gateway transients.

    ``total_retries=0`` mounts a plain adapter: one attempt per call and
    5xx responses are returned to the caller as-is.
    """
    if total_retries > 0:
        max_retries = Retry(total=total_retries, allowed_methods=["POST"], backoff_factor=1,
                            status_forcelist=[502, 503, 504])
    else:
        max_retries = 0
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=max_retries)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def build_dispatch_session() -> requests.Session:
    """Session for email and chat dispatch: fire-and-forget, never retried."""
    return build_session(total_retries=0)
