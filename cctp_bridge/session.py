"""HTTP session management for Circle APIs.

Session creation with retry logic and rate limiting for the Iris
attestation API and the Gateway balance API.

The :py:class:`CircleSession` carries the API base URL so that the
clients built on top of it do not need a separate ``api_url`` argument.

Rate limiting is done per session in memory. A session can be shared
between the worker threads of :py:class:`~cctp_bridge.coordinator.TransferCoordinator`
and :py:class:`~cctp_bridge.balance.BalanceAggregator`.
"""

import logging

from requests import Session
from requests_ratelimiter import LimiterAdapter

from cctp_bridge.logging_retry import LoggingRetry

logger = logging.getLogger(__name__)

#: Default number of retries for API requests
DEFAULT_RETRIES = 3

#: Default backoff factor for retries (seconds)
DEFAULT_BACKOFF_FACTOR = 0.5

#: Default rate limit for Circle API requests per second.
#:
#: Iris allows 35 requests/second. Exceeding it blocks the caller
#: for 5 minutes with HTTP 429, so stay well below.
DEFAULT_REQUESTS_PER_SECOND = 10.0


class CircleSession(Session):
    """A :py:class:`requests.Session` subclass that carries a Circle API base URL.

    Use :py:func:`create_circle_session` to create instances.
    """

    #: API base URL, e.g. ``https://iris-api-sandbox.circle.com``
    api_url: str

    def __init__(self, api_url: str):
        super().__init__()
        self.api_url = api_url.rstrip("/")

    def __repr__(self) -> str:
        return f"<CircleSession api_url={self.api_url!r}>"


def create_circle_session(
    api_url: str,
    retries: int = DEFAULT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    pool_maxsize: int = 32,
) -> CircleSession:
    """Create a :py:class:`CircleSession` with rate limiting and retries.

    The session is configured with:

    - The API URL stored in :py:attr:`CircleSession.api_url`
    - Rate limiting below the Iris 35 requests/second limit
    - Retry with exponential backoff for 429 and 5xx responses

    Retries happen inside a single ``get()``/``post()`` call. When they run out,
    ``requests`` raises and the caller sees one transport failure.

    Example::

        from cctp_bridge.constants import IRIS_API_SANDBOX_URL
        from cctp_bridge.session import create_circle_session

        session = create_circle_session(IRIS_API_SANDBOX_URL)

    :param api_url:
        API base URL without trailing slash.
    :param retries:
        Maximum number of retry attempts for failed requests
    :param backoff_factor:
        Backoff factor for exponential retry delays
    :param requests_per_second:
        Maximum requests per second.
    :param pool_maxsize:
        Maximum number of connections to keep in the connection pool.
        Should be at least as large as the number of worker threads.
    :return:
        Configured :py:class:`CircleSession`
    """
    session = CircleSession(api_url=api_url)

    # Gateway balance lookups are POST requests but do not mutate anything
    retry_policy = LoggingRetry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        respect_retry_after_header=True,
        logger=logger,
        allowed_methods=LoggingRetry.DEFAULT_ALLOWED_METHODS | frozenset(["POST"]),
    )

    adapter = LimiterAdapter(
        per_second=requests_per_second,
        max_retries=retry_policy,
        pool_connections=pool_maxsize,
        pool_maxsize=pool_maxsize,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
