import asyncio

import pytest

from promptrefiner.agents.errors import (
    ErrorKind,
    RefinementError,
    RetryExhaustedError,
    TransportError,
)
from promptrefiner.agents.policies import RetryConfig, RetryController
from promptrefiner.agents.types import RetryAttemptRecord
from promptrefiner.utils.telemetry import InMemoryTelemetry, Telemetry


def _failing(kinds: list[ErrorKind], result: str = "ok"):
    """
    Build an operation that fails with the given kinds, then succeeds.

    Args:
        kinds (list[ErrorKind]): Error kinds raised on successive attempts.
        result (str, optional): Value returned once the kinds are used up. Defaults to "ok".

    Returns:
        tuple: The operation and the list of attempt numbers it saw.
    """
    seen: list[int] = []

    async def op(attempt: int) -> str:
        seen.append(attempt)
        if kinds:
            raise TransportError(kinds.pop(0))
        return result

    return op, seen


def test_delay_sequence_defaults() -> None:
    cfg = RetryConfig()
    assert cfg.delay_for(1) == 0.0
    assert cfg.delays() == [1.0, 2.0]


def test_delay_is_capped() -> None:
    cfg = RetryConfig(max_attempts=6, base_delay=1.0, backoff_factor=4.0, max_delay=10.0)
    assert cfg.delays() == [1.0, 4.0, 10.0, 10.0, 10.0]


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RETRY_BASE_DELAY", "0.5")
    cfg = RetryConfig.from_env()
    assert cfg.max_attempts == 5
    assert cfg.base_delay == 0.5


def test_success_on_first_attempt_never_sleeps(sleep) -> None:
    op, seen = _failing([])
    controller = RetryController(sleep=sleep)
    assert asyncio.run(controller.execute(op)) == "ok"
    assert seen == [1]
    assert sleep.delays == []


def test_retryable_then_success(sleep) -> None:
    op, seen = _failing([ErrorKind.RATE_LIMITED, ErrorKind.NETWORK])
    controller = RetryController(sleep=sleep)
    assert asyncio.run(controller.execute(op)) == "ok"
    assert seen == [1, 2, 3]
    assert sleep.delays == [1.0, 2.0]


def test_exhaustion_raises_single_terminal_error(sleep) -> None:
    op, seen = _failing([ErrorKind.SERVICE_UNAVAILABLE] * 5)
    controller = RetryController(sleep=sleep)
    with pytest.raises(RetryExhaustedError) as exc:
        asyncio.run(controller.execute(op))
    assert seen == [1, 2, 3]
    assert sleep.delays == [1.0, 2.0]
    assert exc.value.attempts == 3
    assert "temporarily unavailable after 3 attempts" in exc.value.message
    assert exc.value.kind is ErrorKind.SERVICE_UNAVAILABLE


@pytest.mark.parametrize(
    "kind",
    [
        ErrorKind.AUTH_INVALID,
        ErrorKind.AUTH_MISSING,
        ErrorKind.EMPTY_RESPONSE,
        ErrorKind.UNPARSEABLE,
        ErrorKind.UNKNOWN,
    ],
)
def test_non_retryable_surfaces_immediately(sleep, kind: ErrorKind) -> None:
    op, seen = _failing([kind])
    controller = RetryController(sleep=sleep)
    with pytest.raises(RefinementError) as exc:
        asyncio.run(controller.execute(op))
    assert not isinstance(exc.value, RetryExhaustedError)
    assert exc.value.kind is kind
    assert seen == [1]
    assert sleep.delays == []


def test_attempts_and_delays_are_observable(sleep) -> None:
    events: list[tuple] = []
    buffer = InMemoryTelemetry()

    def on_attempt(record: RetryAttemptRecord) -> None:
        events.append(("attempt", record.attempt, record.delay, record.retryable))

    def on_delay(attempt: int, delay: float, retryable: bool) -> None:
        events.append(("delay", attempt, delay, retryable))

    op, _ = _failing([ErrorKind.RATE_LIMITED])
    controller = RetryController(
        sleep=sleep,
        telemetry=Telemetry(sink=buffer),
        on_attempt=on_attempt,
        on_delay=on_delay,
    )
    asyncio.run(controller.execute(op))

    assert events == [
        ("attempt", 1, 0.0, None),
        ("delay", 2, 1.0, True),
        ("attempt", 2, 1.0, True),
    ]
    assert buffer.kinds() == ["retry_attempt", "retry_delay", "retry_attempt"]


def test_other_exceptions_are_not_caught(sleep) -> None:
    async def op(attempt: int) -> str:
        raise KeyError("boom")

    with pytest.raises(KeyError):
        asyncio.run(RetryController(sleep=sleep).execute(op))
    assert sleep.delays == []


def test_require_error_rejects_missing_error() -> None:
    with pytest.raises(RuntimeError):
        RetryController._require_error(None)
    error = RefinementError(ErrorKind.NETWORK)
    assert RetryController._require_error(error) is error
