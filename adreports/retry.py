import time
from collections.abc import Callable
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    if base_seconds <= 0:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** (attempt - 1)))


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    max_backoff_seconds: float = 30.0,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                raise RetryExhaustedError(attempt, exc) from exc
        sleep(backoff_delay(attempt, base_seconds=backoff_seconds, max_seconds=max_backoff_seconds))
        attempt += 1
