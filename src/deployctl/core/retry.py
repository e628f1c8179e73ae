"""Bounded retry policy shared by every retrying call site.

Attempt counts and the fixed interval between attempts live here and only
here, so a run's retry behaviour is a single auditable configuration surface.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from deployctl.core.exceptions import ValidationError
from deployctl.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class PollResult(Generic[T]):
    """Outcome of polling a check under a RetryPolicy."""

    succeeded: bool
    attempts: int
    results: list[T] = field(default_factory=list)

    @property
    def last(self) -> T | None:
        return self.results[-1] if self.results else None


@dataclass
class RetryPolicy:
    """N attempts with a fixed interval. Never unbounded."""

    attempts: int = 3
    interval: float = 5.0
    success_threshold: int = 1
    initial_delay: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValidationError("Retry attempts must be at least 1", {"attempts": self.attempts})
        if self.interval < 0 or self.initial_delay < 0:
            raise ValidationError("Retry delays cannot be negative")
        if not 1 <= self.success_threshold <= self.attempts:
            raise ValidationError(
                "Success threshold must be between 1 and the number of attempts",
                {"success_threshold": self.success_threshold, "attempts": self.attempts},
            )

    def call(
        self,
        func: Callable[[], T],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Call func until it returns, re-raising the last error once attempts run out.

        Args:
            func: Zero-argument callable
            retry_on: Exception types that count as a failed attempt
            on_retry: Called with (attempt, error) before sleeping

        Returns:
            func's return value
        """
        if self.initial_delay:
            self.sleep(self.initial_delay)

        for attempt in range(1, self.attempts + 1):
            try:
                return func()
            except retry_on as e:
                if attempt >= self.attempts:
                    raise
                if on_retry:
                    on_retry(attempt, e)
                else:
                    logger.warning("Attempt failed, retrying", attempt=attempt, max_attempts=self.attempts, error=e)
                self.sleep(self.interval)

        raise AssertionError("unreachable")

    def poll(
        self,
        check: Callable[[], T],
        is_success: Callable[[T], bool] = bool,
        on_attempt: Callable[[int, T], Any] | None = None,
    ) -> PollResult[T]:
        """Run check until success_threshold consecutive successes or attempts run out.

        Args:
            check: Zero-argument callable producing one observation
            is_success: Classifies an observation
            on_attempt: Called with (attempt, observation) after each check

        Returns:
            PollResult with every observation made
        """
        result: PollResult[T] = PollResult(succeeded=False, attempts=0)
        consecutive = 0

        if self.initial_delay:
            self.sleep(self.initial_delay)

        for attempt in range(1, self.attempts + 1):
            observation = check()
            result.attempts = attempt
            result.results.append(observation)
            if on_attempt:
                on_attempt(attempt, observation)

            consecutive = consecutive + 1 if is_success(observation) else 0
            if consecutive >= self.success_threshold:
                result.succeeded = True
                return result

            remaining = self.attempts - attempt
            if consecutive + remaining < self.success_threshold:
                break
            self.sleep(self.interval)

        return result
