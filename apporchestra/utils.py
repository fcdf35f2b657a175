"""
Utility functions for apporchestra.

Includes logging, retries, identifiers, clocks and locking helpers.
"""

import json
import logging
import random
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler

from apporchestra.errors import Cancelled, TransientError


# Global console for pretty output
console = Console()


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for the orchestrator.

    Args:
        log_file: Optional path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("apporchestra")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "entity"):
            log_data["entity"] = record.entity
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    alphabet = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(alphabet[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(alphabet) for _ in range(16))

    return timestamp_part + random_part


class Clock:
    """
    Monotonic clock with cancellable sleeps.

    Every blocking wait in the lifecycle goes through a Clock so tests can
    substitute a fake one and run multi-minute budgets instantly.
    """

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, token: Any = None) -> None:
        """
        Sleep for ``seconds``, waking early if ``token`` is cancelled.

        Raises:
            Cancelled: If the token was cancelled before or during the sleep
        """
        if seconds <= 0:
            if token is not None:
                token.raise_if_cancelled()
            return
        if token is None:
            time.sleep(seconds)
            return
        if token.wait(seconds):
            raise Cancelled(token.reason or "Cancelled")


def retry_with_backoff(
    func: Callable[[], Any],
    deadline: Optional[float] = None,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_multiplier: float = 2.0,
    token: Any = None,
    clock: Optional[Clock] = None,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Retry a function on TransientError with jittered exponential backoff.

    PermanentError and any other exception propagate immediately. Retries
    stop when the next sleep would cross ``deadline`` (a ``clock.now()``
    value), in which case the last TransientError is re-raised.

    Args:
        func: Function to retry
        deadline: Absolute clock time after which no retry is attempted
        initial_delay: First backoff delay in seconds
        max_delay: Cap on the backoff delay
        backoff_multiplier: Multiplier for each retry
        token: Cancellation token observed between attempts
        clock: Clock used for sleeping (defaults to the system clock)
        logger: Logger for retry messages

    Returns:
        Result of successful function call
    """
    clock = clock or Clock()
    delay = initial_delay
    attempt = 1

    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return func()
        except TransientError as e:
            wait_time = random.uniform(delay / 2, delay)
            if deadline is not None and clock.now() + wait_time > deadline:
                if logger:
                    logger.error(f"Giving up after {attempt} attempt(s): {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt} failed: {e}. Retrying in {wait_time:.1f}s..."
                )

            clock.sleep(wait_time, token)
            delay = min(delay * backoff_multiplier, max_delay)
            attempt += 1


class ReadWriteLock:
    """
    Coarse reader/writer lock.

    Many readers may hold the lock at once; a writer waits for readers to
    drain and blocks new readers while it waits.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def sanitize_error_message(error: Exception, max_length: int = 500) -> str:
    """
    Truncate an error message for logs and sensors.

    Args:
        error: Exception to sanitize
        max_length: Maximum message length

    Returns:
        Sanitized error message
    """
    message = str(error)
    if len(message) > max_length:
        message = message[:max_length] + "..."
    return message
