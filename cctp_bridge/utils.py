"""Bunch of random utilities."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

import coloredlogs
from filelock import FileLock

logger = logging.getLogger(__name__)


def get_url_domain(url: str) -> str:
    """Redact URL so that only domain is displayed.

    Some RPC services e.g. infura use path as an API key.
    """
    parsed = urlparse(url)
    if parsed.port in (80, 443, None):
        return parsed.hostname
    else:
        return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: Path | None = None,
    clear_log_file=True,
) -> logging.Logger:
    """Set up coloured log output.

    - Log level comes from ``LOG_LEVEL`` environment variable if set
    - Tune down some noisy dependency library logging

    :param simplified_logging:
        Only print the message, for command line scripts.

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert isinstance(numeric_level, int), f"No level: {level}"

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-36s [%(threadName)s] %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    coloredlogs.install(level=numeric_level, fmt=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"

        log_file.parent.mkdir(parents=True, exist_ok=True)

        # The file always gets at least INFO, env var controls only terminal output
        min_level = min(logging.INFO, numeric_level)
        file_handler = logging.FileHandler(log_file, mode="w" if clear_log_file else "a", encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))

        root = logging.getLogger()
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()


@contextmanager
def wait_other_writers(path: Path | str, timeout: float = 120):
    """Wait other potential writers writing the same file.

    - Two bridge processes sharing one transfer store file
      must not interleave their writes

    :param path:
        File that is being written

    :param timeout:
        How many seconds wait to acquire the lock file.

    :raise filelock.Timeout:
        If the file writer is stuck with the lock.
    """

    if isinstance(path, str):
        path = Path(path)

    assert isinstance(path, Path), f"Not Path object: {path}"
    assert path.is_absolute(), f"Did not get an absolute path: {path}"

    os.makedirs(path.parent, exist_ok=True)

    lock_file = path.parent / (path.name + ".lock")
    lock = FileLock(lock_file, timeout=timeout)

    if lock.is_locked:
        logger.info("File %s locked for writing, waiting %f seconds", path, timeout)

    with lock:
        yield
