"""
Retry policy for database reads and status writes.

Transient failures are recognised by type, not by message text. The payment
gateway call is never wrapped here: retrying it blindly could double-charge.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError

from entitlement_api.core import config
from entitlement_api.core.exceptions import TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_TYPES = (
    TransientInfraError,
    ConnectionError,
    TimeoutError,
    OperationalError,
    DisconnectionError,
)


def is_transient(error: BaseException) -> bool:
    """True if error is an infrastructure blip that is worth retrying."""
    if isinstance(error, TRANSIENT_TYPES):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return bool(getattr(error, "transient", False))


def with_retry(
    operation: Callable[[], T],
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    before_retry: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable to run
        max_attempts: Total attempts including the first (default RETRY_MAX_ATTEMPTS)
        base_delay: Seconds before the first retry; doubles each attempt
        sleep: Blocking sleep function (injected in tests)
        before_retry: Called before each retry, e.g. session.rollback

    Returns:
        Whatever operation returns

    Raises:
        The last error once attempts are exhausted, or any non-transient error immediately
    """
    attempts = max_attempts if max_attempts is not None else config.RETRY_MAX_ATTEMPTS
    delay = base_delay if base_delay is not None else config.RETRY_BASE_DELAY_SECONDS

    for attempt in range(attempts):
        try:
            return operation()
        except Exception as e:
            if not is_transient(e) or attempt >= attempts - 1:
                raise
            wait = delay * (2 ** attempt)
            logger.warning(
                f"Transient error on attempt {attempt + 1}/{attempts}, retrying in {wait:.1f}s: {e}"
            )
            if before_retry is not None:
                before_retry()
            sleep(wait)

    raise ValueError("max_attempts must be at least 1")
