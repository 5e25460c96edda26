import asyncio

import pytest
from conftest import FakeTransport, StaticCredentials, complete_json, refining_json

from promptrefiner.agents.errors import (
    ErrorKind,
    RefinementError,
    RetryExhaustedError,
    TransportError,
)
from promptrefiner.agents.orchestrator import RefinementOrchestrator
from promptrefiner.agents.types import (
    CompleteResult,
    ConversationContext,
    RefiningResult,
)


def test_run_returns_refining_result(orchestrator, transport: FakeTransport) -> None:
    transport.push(
        refining_json({"question": "Which language?", "answers": ["JS", "Python", "Go"]})
    )
    result = asyncio.run(orchestrator.run(ConversationContext(idea="write unit tests")))
    assert isinstance(result, RefiningResult)
    assert result.questions[0].question == "Which language?"
    assert transport.keys == ["test-key"]
    assert transport.requests[0].model == "test-model"


def test_missing_credential_never_dispatches(
    orchestrator, transport: FakeTransport, credentials: StaticCredentials
) -> None:
    credentials.key = None
    with pytest.raises(RefinementError) as exc:
        asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert exc.value.kind is ErrorKind.AUTH_MISSING
    assert transport.requests == []


def test_blank_credential_counts_as_missing(orchestrator, credentials) -> None:
    credentials.key = "   "
    with pytest.raises(RefinementError) as exc:
        asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert exc.value.kind is ErrorKind.AUTH_MISSING


def test_retries_resend_identical_request(orchestrator, transport: FakeTransport, sleep) -> None:
    transport.push(
        TransportError(ErrorKind.RATE_LIMITED),
        complete_json("Final prompt"),
    )
    result = asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert isinstance(result, CompleteResult)
    assert len(transport.requests) == 2
    assert transport.requests[0] == transport.requests[1]
    assert sleep.delays == [1.0]


def test_service_unavailable_three_times_exhausts(orchestrator, transport, sleep) -> None:
    transport.push(*[TransportError(ErrorKind.SERVICE_UNAVAILABLE) for _ in range(3)])
    with pytest.raises(RetryExhaustedError) as exc:
        asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert "temporarily unavailable after 3 attempts" in exc.value.message
    assert len(transport.requests) == 3
    assert sleep.delays == [1.0, 2.0]


def test_auth_invalid_is_not_retried(orchestrator, transport, sleep) -> None:
    transport.push(TransportError(ErrorKind.AUTH_INVALID))
    with pytest.raises(RefinementError) as exc:
        asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert exc.value.kind is ErrorKind.AUTH_INVALID
    assert len(transport.requests) == 1
    assert sleep.delays == []


def test_empty_response_is_not_retried(orchestrator, transport, sleep) -> None:
    transport.push("")
    with pytest.raises(RefinementError) as exc:
        asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert exc.value.kind is ErrorKind.EMPTY_RESPONSE
    assert len(transport.requests) == 1


def test_unexpected_transport_error_becomes_unknown(orchestrator, transport, sleep) -> None:
    transport.push(ZeroDivisionError("boom"))
    with pytest.raises(RefinementError) as exc:
        asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert exc.value.kind is ErrorKind.UNKNOWN
    assert len(transport.requests) == 1


def test_malformed_text_is_repaired(orchestrator, transport) -> None:
    transport.push("Could you tell me more about the audience?")
    result = asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert isinstance(result, RefiningResult)
    assert len(result.questions) == 1


def test_telemetry_trace(orchestrator, transport, telemetry_buffer) -> None:
    transport.push(TransportError(ErrorKind.NETWORK), complete_json("P"))
    asyncio.run(orchestrator.run(ConversationContext(idea="x")))
    assert telemetry_buffer.kinds() == [
        "request",
        "retry_attempt",
        "error",
        "retry_delay",
        "retry_attempt",
        "response",
        "parse_success",
    ]


def test_hooks_observe_attempts(orchestrator, transport) -> None:
    attempts: list[int] = []
    delays: list[float] = []
    transport.push(TransportError(ErrorKind.NETWORK), complete_json("P"))
    asyncio.run(
        orchestrator.run(
            ConversationContext(idea="x"),
            on_attempt=lambda r: attempts.append(r.attempt),
            on_delay=lambda n, d, _r: delays.append(d),
        )
    )
    assert attempts == [1, 2]
    assert delays == [1.0]


def test_default_collaborators(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFINER_MODEL", "env-model")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "4")
    orch = RefinementOrchestrator(transport=FakeTransport(), credentials=StaticCredentials())
    assert orch.model == "env-model"
    assert orch.retry_config.max_attempts == 4
    assert orch.telemetry.enabled is False
