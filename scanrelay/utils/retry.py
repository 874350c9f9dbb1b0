"""tenacity helpers shared by every component that retries with backoff.

Store puts, dispatcher submissions and relay fetch/import calls all use
``async_retrying()`` so that attempt counting, backoff and the retry log
event look the same everywhere.
"""

from __future__ import annotations

from typing import Callable

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)


class ExponentialBackoff(wait_base):
    """Deterministic backoff: ``base * 2**(n-1)`` after the n-th failed attempt, capped.

    No jitter: retry timing is reproducible in tests and in logs.
    """

    def __init__(self, *, base: float = 0.5, cap: float = 4.0) -> None:
        self._base = float(base)
        self._cap = float(cap)

    def __call__(self, retry_state) -> float:
        n = max(1, retry_state.attempt_number)
        return min(self._cap, self._base * (2 ** (n - 1)))


def async_retrying(
    *,
    operation: str,
    max_attempts: int,
    base: float,
    cap: float,
    retry_on: Callable[[BaseException], bool],
    **log_fields: object,
) -> AsyncRetrying:
    """Build an AsyncRetrying that re-raises the last exception when attempts run out.

    Args:
        operation:    Name used in the ``retry`` log event.
        max_attempts: Total attempts including the first one.
        base, cap:    ExponentialBackoff parameters (seconds).
        retry_on:     Predicate deciding whether an exception is transient.
                      Non-transient exceptions propagate immediately.
        log_fields:   Extra key/value pairs added to the retry log event.
    """

    def _before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            sleep_s=sleep,
            error=repr(exc) if exc else None,
            **log_fields,
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=ExponentialBackoff(base=base, cap=cap),
        retry=retry_if_exception(retry_on),
        reraise=True,
        before_sleep=_before_sleep,
    )
