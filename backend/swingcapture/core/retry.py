import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_timeout(
    fn: Callable[[], T],
    retryable: Tuple[Type[BaseException], ...],
    attempts: int = 3,
    backoff: float = 0.5,
    description: str = "operation",
) -> T:
    """
    Call ``fn`` and retry it when it raises one of the ``retryable`` exceptions.

    Args:
        fn: Zero-argument callable to run
        retryable: Exception types treated as transient (timeouts)
        attempts: Total number of attempts, including the first
        backoff: Base delay in seconds, doubled after every failed attempt
        description: Label used in log messages

    Returns:
        Whatever ``fn`` returns. The last exception is re-raised once all
        attempts are used up.
    """
    attempts = max(1, attempts)
    delay = backoff
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retryable as e:
            if attempt == attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            logger.warning(
                f"{description} timed out (attempt {attempt}/{attempts}): {e}; retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            delay *= 2
    raise RuntimeError("unreachable")
