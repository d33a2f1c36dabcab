"""Decorators wrapped around EC2 calls: timing and retry on transient errors."""
import time
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, cast

from botocore.exceptions import ClientError, ConnectionError as BotoConnectionError

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

SLOW_CALL_SECONDS = 5.0

THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "InternalError",
}


def log_execution_time(func: F) -> F:
    """Log how long a provider call took; slow calls are logged at warning."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            duration = time.monotonic() - start_time
            logger.error(f"{func.__name__} failed after {duration:.2f}s: {str(e)}")
            raise
        duration = time.monotonic() - start_time
        if duration >= SLOW_CALL_SECONDS:
            logger.warning(f"{func.__name__} took {duration:.2f}s")
        else:
            logger.debug(f"{func.__name__} completed in {duration:.2f}s")
        return result
    return cast(F, wrapper)


def is_transient_aws_error(error: Exception) -> bool:
    """Connection failures and throttling responses are worth another attempt."""
    if isinstance(error, BotoConnectionError):
        return True
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code') in THROTTLING_ERROR_CODES
    return False


def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
          should_retry: Callable[[Exception], bool] = is_transient_aws_error,
          logger_name: Optional[str] = None):
    """Retry an idempotent call while should_retry accepts the error.

    Args:
        max_attempts: Attempts before the last error is re-raised
        delay: Seconds before the second attempt
        backoff: Multiplier applied to the delay after each failure
        should_retry: Predicate deciding whether an error is transient
        logger_name: Logger to report retries on (defaults to this module's)
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if attempt == max_attempts or not should_retry(e):
                        raise
                    retry_logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {str(e)}. "
                        f"Retrying in {current_delay:.2f}s"
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff

        return cast(F, wrapper)

    return decorator
