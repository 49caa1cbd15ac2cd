from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from calmirror.http import is_retryable_error, retry_delay_seconds

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

T = TypeVar("T")


def _wait_for_next_attempt(retry_state: RetryCallState) -> float:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    return retry_delay_seconds(error, retry_state.attempt_number)


def _before_sleep(operation_name: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed on attempt %d (%s); retrying in %.2fs",
            operation_name,
            retry_state.attempt_number,
            error,
            delay,
        )

    return _log


def with_retry(
    operation_name: str,
    fn: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run ``fn`` and retry rate-limit, 5xx and transport failures; the last error is re-raised."""
    retrying = Retrying(
        stop=stop_after_attempt(max(1, int(max_attempts))),
        wait=_wait_for_next_attempt,
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_before_sleep(operation_name),
        sleep=sleep or time.sleep,
        reraise=True,
    )
    return retrying(fn)
