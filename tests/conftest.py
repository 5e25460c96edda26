import json
from typing import Any

import pytest

from promptrefiner.agents.context import ConversationContextBuilder
from promptrefiner.agents.orchestrator import RefinementOrchestrator
from promptrefiner.agents.policies import RetryConfig
from promptrefiner.agents.types import GenerationRequest, PromptHistoryItem
from promptrefiner.core.session_manager import SessionManager
from promptrefiner.core.storage.history import InMemoryHistoryStore
from promptrefiner.utils.telemetry import InMemoryTelemetry, Telemetry


class FakeTransport:
    """
    Transport returning scripted responses in order.

    Each scripted item is either raw text or an exception to raise.
    """

    def __init__(self, responses: list[Any] | None = None) -> None:
        """
        Initialize the FakeTransport.

        Args:
            responses (list[Any] | None, optional): Scripted responses. Defaults to None.
        """
        self.responses = list(responses or [])
        self.requests: list[GenerationRequest] = []
        self.keys: list[str] = []

    def push(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def generate(self, request: GenerationRequest, api_key: str) -> str:
        self.requests.append(request)
        self.keys.append(api_key)
        if not self.responses:
            raise AssertionError("FakeTransport ran out of scripted responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class StaticCredentials:
    """
    Credential provider with a settable key.
    """

    def __init__(self, key: str | None = "test-key") -> None:
        self.key = key

    def get_credential(self) -> str | None:
        return self.key


class RecordingSleep:
    """
    Awaitable sleep that records delays instead of waiting.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class CountingStore(InMemoryHistoryStore):
    """
    In-memory history store counting save calls.
    """

    def __init__(self, items: list[PromptHistoryItem] | None = None) -> None:
        super().__init__(items=list(items or []))
        self.saves: list[list[PromptHistoryItem]] = []

    def save_history(self, items: list[PromptHistoryItem]) -> None:
        self.saves.append(list(items))
        super().save_history(items)


def refining_json(*questions: dict[str, Any]) -> str:
    return json.dumps({"status": "refining", "questions": list(questions)})


def complete_json(*prompts: str, **extra: Any) -> str:
    return json.dumps({"status": "complete", "finalPrompts": list(prompts), **extra})


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def credentials() -> StaticCredentials:
    return StaticCredentials()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def telemetry_buffer() -> InMemoryTelemetry:
    return InMemoryTelemetry()


@pytest.fixture
def builder() -> ConversationContextBuilder:
    return ConversationContextBuilder(base_instruction="BASE INSTRUCTION")


@pytest.fixture
def orchestrator(
    transport: FakeTransport,
    credentials: StaticCredentials,
    builder: ConversationContextBuilder,
    sleep: RecordingSleep,
    telemetry_buffer: InMemoryTelemetry,
) -> RefinementOrchestrator:
    """
    Orchestrator wired to fakes with the default retry policy.

    Args:
        transport (FakeTransport): The scripted transport.
        credentials (StaticCredentials): The credential provider.
        builder (ConversationContextBuilder): The request builder.
        sleep (RecordingSleep): The recording sleep.
        telemetry_buffer (InMemoryTelemetry): The telemetry sink.

    Returns:
        RefinementOrchestrator: The orchestrator under test.
    """
    return RefinementOrchestrator(
        transport=transport,
        credentials=credentials,
        builder=builder,
        retry_config=RetryConfig(),
        telemetry=Telemetry(sink=telemetry_buffer),
        sleep=sleep,
        model="test-model",
    )


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def manager(orchestrator: RefinementOrchestrator, store: CountingStore) -> SessionManager:
    return SessionManager(orchestrator=orchestrator, store=store)
