"""urllib3 retry policy that tells what it is doing."""

import logging

from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class LoggingRetry(Retry):
    """A :py:class:`urllib3.util.retry.Retry` that logs every retry.

    Plain ``Retry`` backs off silently, which makes a slow Iris API
    look like a hung process.

    :param logger:
        Logger receiving the retry warnings. Defaults to this module's logger.
    """

    def __init__(self, *args, logger: logging.Logger | None = None, **kwargs):
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        super().__init__(*args, **kwargs)

    def new(self, **kwargs) -> "LoggingRetry":
        # Retry.new() rebuilds the object from its known params, carry the logger over
        kwargs["logger"] = self.logger
        return super().new(**kwargs)

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        status = response.status if response is not None else None
        self.logger.warning(
            "Retrying HTTP %s %s, status=%s, error=%s, retries left=%s",
            method,
            url,
            status,
            error,
            self.total,
        )
        return super().increment(
            method=method,
            url=url,
            response=response,
            error=error,
            _pool=_pool,
            _stacktrace=_stacktrace,
        )
