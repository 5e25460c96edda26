"""Retry policy for orchestration attempts."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from promptrefiner.agents.errors import RefinementError, RetryExhaustedError
from promptrefiner.agents.types import RetryAttemptRecord
from promptrefiner.utils.env_cfg import load_retry_env
from promptrefiner.utils.telemetry import Telemetry

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryConfig:
    """
    Configuration for bounded exponential backoff.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """
        Build a RetryConfig from environment variables.

        Returns:
            RetryConfig: The configured policy.
        """
        cfg = load_retry_env()
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay,
            backoff_factor=cfg.backoff_factor,
            max_delay=cfg.max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """
        Return the delay applied before the given attempt.

        Args:
            attempt (int): The 1-based attempt number.

        Returns:
            float: Seconds to wait; 0 for the first attempt.
        """
        if attempt < 2:
            return 0.0
        return min(self.max_delay, self.base_delay * self.backoff_factor ** (attempt - 2))

    def delays(self) -> list[float]:
        """
        Return every inter-attempt delay the policy can apply.

        Returns:
            list[float]: Delays before attempts 2..max_attempts.
        """
        return [self.delay_for(n) for n in range(2, self.max_attempts + 1)]


class RetryPhase(str, Enum):
    """Phases of the retry loop."""

    ATTEMPT = "attempt"
    CLASSIFY = "classify"
    WAIT = "wait"
    RAISE = "raise"
    EXHAUSTED = "exhausted"


class RetryController:
    """
    Runs an operation in a bounded retry loop.

    The loop moves ATTEMPT -> CLASSIFY -> WAIT -> ATTEMPT until the operation
    succeeds, a non-retryable error is seen (RAISE) or attempts run out
    (EXHAUSTED). Attempts and delays are reported before their outcome is known.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Sleep | None = None,
        telemetry: Telemetry | None = None,
        on_attempt: Callable[[RetryAttemptRecord], None] | None = None,
        on_delay: Callable[[int, float, bool], None] | None = None,
    ) -> None:
        """
        Initialize the RetryController.

        Args:
            config (RetryConfig | None, optional): The retry policy. Defaults to RetryConfig().
            sleep (Sleep | None, optional): Awaitable sleep used between attempts. Defaults to asyncio.sleep.
            telemetry (Telemetry | None, optional): Receives retry events. Defaults to a disabled instance.
            on_attempt (Callable[[RetryAttemptRecord], None] | None, optional): Called before each attempt.
            on_delay (Callable[[int, float, bool], None] | None, optional): Called before each wait with
                (next attempt, delay, retryable).
        """
        self.config = config or RetryConfig()
        self.sleep = sleep or asyncio.sleep
        self.telemetry = telemetry or Telemetry(enabled=False)
        self.on_attempt = on_attempt
        self.on_delay = on_delay

    def _report_attempt(self, record: RetryAttemptRecord) -> None:
        logger.debug(
            "Attempt {}/{} (delay={}s, retryable={})",
            record.attempt,
            self.config.max_attempts,
            record.delay,
            record.retryable,
        )
        self.telemetry.emit(
            "retry_attempt",
            {
                "attempt": record.attempt,
                "delay_ms": int(record.delay * 1000),
                "retryable": record.retryable,
            },
        )
        if self.on_attempt is not None:
            self.on_attempt(record)

    def _report_delay(self, attempt: int, delay: float, retryable: bool) -> None:
        logger.info("Retrying in {}s before attempt {}", delay, attempt)
        self.telemetry.emit(
            "retry_delay",
            {"attempt": attempt, "delay_ms": int(delay * 1000), "retryable": retryable},
        )
        if self.on_delay is not None:
            self.on_delay(attempt, delay, retryable)

    @staticmethod
    def _require_error(error: RefinementError | None) -> RefinementError:
        if error is None:
            logger.error("RuntimeError: Retry phase reached without a recorded error.")
            raise RuntimeError("Retry phase reached without a recorded error.")
        return error

    async def execute(self, operation: Callable[[int], Awaitable[T]]) -> T:
        """
        Run the operation until it succeeds or the policy gives up.

        Args:
            operation (Callable[[int], Awaitable[T]]): Coroutine factory receiving the attempt number.

        Returns:
            T: The operation's result.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error.
            RefinementError: The first non-retryable error, unchanged.
        """
        attempt = 1
        delay = 0.0
        retryable: bool | None = None
        error: RefinementError | None = None
        phase = RetryPhase.ATTEMPT

        while True:
            if phase is RetryPhase.ATTEMPT:
                self._report_attempt(RetryAttemptRecord(attempt, delay, retryable))
                try:
                    return await operation(attempt)
                except RefinementError as e:
                    error = e
                    phase = RetryPhase.CLASSIFY

            elif phase is RetryPhase.CLASSIFY:
                error = self._require_error(error)
                retryable = error.retryable
                logger.warning(
                    "Attempt {} failed with {} (retryable={}): {}",
                    attempt,
                    error.kind.value,
                    retryable,
                    error.message,
                )
                if not retryable:
                    phase = RetryPhase.RAISE
                elif attempt >= self.config.max_attempts:
                    phase = RetryPhase.EXHAUSTED
                else:
                    phase = RetryPhase.WAIT

            elif phase is RetryPhase.WAIT:
                attempt += 1
                delay = self.config.delay_for(attempt)
                self._report_delay(attempt, delay, True)
                await self.sleep(delay)
                phase = RetryPhase.ATTEMPT

            elif phase is RetryPhase.RAISE:
                error = self._require_error(error)
                raise error

            else:
                error = self._require_error(error)
                logger.error(
                    "Giving up after {} attempts; last error: {}", attempt, error.kind.value
                )
                raise RetryExhaustedError(error.kind, attempt) from error
