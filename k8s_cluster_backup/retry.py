"""
Bounded retry with exponential backoff.

The wait after the k-th failed attempt is initial_wait * backoff_factor**(k-1),
including after the last attempt, so five attempts starting at 10s wait
10, 20, 40, 80 and 160 seconds before the outcome is reported as exhausted.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Type

from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)


@dataclass
class RetryOutcome:
    succeeded: bool
    value: Any = None
    attempts: int = 0
    waits: List[float] = field(default_factory=list)
    error: Optional[BaseException] = None


def retry_with_backoff(
    operation: Callable[[int], Any],
    max_attempts: int,
    initial_wait: float,
    backoff_factor: float = 2,
    sleep: Callable[[float], None] = time.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_failure: Optional[Callable[[int, Optional[BaseException], float], None]] = None,
) -> RetryOutcome:
    """
    Call operation(attempt_number) until it returns a truthy value.

    A falsy return or an exception from retry_on counts as a failed attempt;
    any other exception propagates immediately. on_failure(attempt, error,
    wait) is called before each backoff sleep.
    """
    waits: List[float] = []
    attempts = [0]
    wait = wait_exponential(multiplier=initial_wait, exp_base=backoff_factor)

    def _sleep(seconds):
        waits.append(seconds)
        sleep(seconds)

    def _attempt():
        attempts[0] += 1
        return operation(attempts[0])

    def _error(state):
        return state.outcome.exception() if state.outcome.failed else None

    def _before_sleep(state):
        if on_failure:
            on_failure(state.attempt_number, _error(state), state.next_action.sleep)

    def _exhausted(state):
        delay = wait(state)
        if on_failure:
            on_failure(state.attempt_number, _error(state), delay)
        _sleep(delay)
        return _Exhausted(_error(state))

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        retry=retry_if_result(lambda value: not value) | retry_if_exception_type(retry_on),
        sleep=_sleep,
        before_sleep=_before_sleep,
        retry_error_callback=_exhausted,
    )
    value = retrying(_attempt)
    if isinstance(value, _Exhausted):
        return RetryOutcome(False, None, attempts[0], waits, value.error)
    return RetryOutcome(True, value, attempts[0], waits)


class _Exhausted:
    def __init__(self, error):
        self.error = error
