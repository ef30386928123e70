"""Bounded retry helper shared by every retry level of a download."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from .errors import is_retryable

if TYPE_CHECKING:
    from collections.abc import Callable

LOG = logging.getLogger("htsget_stream.retry")

T = TypeVar("T")


def retry_call(
    operation: Callable[[], T],
    *,
    attempts: int,
    pause: float = 0.0,
    label: str = "operation",
    retry_on: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` tries are used up.

    Args:
        operation: Zero-argument callable performing one attempt.
        attempts: Total number of tries, at least 1.
        pause: Seconds to wait between tries.
        label: Name used in the per-attempt log lines.
        retry_on: Predicate deciding whether a raised exception is worth
            another try. Exceptions it rejects propagate immediately.
        sleep: Sleep function, replaceable in tests.

    Returns:
        Whatever ``operation`` returned on the first successful try.

    Raises:
        The exception raised by the last attempt.
    """
    if attempts < 1:
        msg = "attempts must be at least 1"
        raise ValueError(msg)

    def log_failure(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        LOG.warning(
            "%s failed (attempt %d/%d): %s",
            label,
            state.attempt_number,
            attempts,
            error,
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(pause),
        retry=retry_if_exception(retry_on),
        before_sleep=log_failure,
        sleep=sleep,
        reraise=True,
    )
    return retrying(operation)
