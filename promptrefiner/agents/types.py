"""Shared types for refinement orchestration."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Protocol, Union

from promptrefiner.agents.errors import ErrorKind

Complexity = Literal["basic", "detailed", "comprehensive"]
OutputStyle = Literal["professional", "casual", "technical", "educational"]
OutputFormat = Literal["Markdown", "JSON", "Plain Text"]
Approach = Literal["detailed", "concise", "comprehensive"]

COMPLEXITIES: tuple[str, ...] = ("basic", "detailed", "comprehensive")
OUTPUT_STYLES: tuple[str, ...] = ("professional", "casual", "technical", "educational")
OUTPUT_FORMATS: tuple[str, ...] = ("Markdown", "JSON", "Plain Text")
APPROACHES: tuple[str, ...] = ("detailed", "concise", "comprehensive")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class QuestionKind(str, Enum):
    """Closed set of question kinds the model may ask."""

    CLARIFICATION = "clarification"
    SPECIFICATION = "specification"
    SCENARIO = "scenario"
    CONSTRAINT = "constraint"
    EXAMPLE = "example"
    PRIORITY = "priority"

    @classmethod
    def coerce(cls, value: Any) -> "QuestionKind":
        """
        Map a loosely typed value onto a kind, defaulting to clarification.

        Args:
            value (Any): The raw value from the model.

        Returns:
            QuestionKind: The matching kind or CLARIFICATION.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.CLARIFICATION


class SessionState(str, Enum):
    """States of a refinement session."""

    IDLE = "idle"
    LOADING = "loading"
    REFINING = "refining"
    FINAL = "final"
    ERROR = "error"


@dataclass(frozen=True)
class RefinementQuestion:
    """A question the model wants answered before finalizing."""

    id: str
    question: str
    answers: tuple[str, ...]
    kind: QuestionKind = QuestionKind.CLARIFICATION
    allow_custom: bool = True
    required: bool = False
    depends_on: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind.value,
            "question": self.question,
            "answers": list(self.answers),
            "allowCustom": self.allow_custom,
            "required": self.required,
            "dependsOn": list(self.depends_on),
        }


@dataclass(frozen=True)
class RefinementTurn:
    """One answered question. Immutable once recorded."""

    question_id: str
    question: str
    answer: str
    kind: QuestionKind = QuestionKind.CLARIFICATION
    required: bool = False
    round: int = 1
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "questionId": self.question_id,
            "question": self.question,
            "answer": self.answer,
            "questionType": self.kind.value,
            "required": self.required,
            "round": self.round,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class FocusArea:
    """A user-weighted topic that shapes question and prompt emphasis."""

    id: str
    name: str
    enabled: bool = True
    weight: float = 1.0


DEFAULT_FOCUS_AREAS: tuple[FocusArea, ...] = (
    FocusArea(id="technical", name="Technical depth", enabled=True, weight=3),
    FocusArea(id="business", name="Business context", enabled=False, weight=2),
    FocusArea(id="ux", name="User experience", enabled=False, weight=2),
    FocusArea(id="performance", name="Performance", enabled=False, weight=1),
    FocusArea(id="security", name="Security", enabled=False, weight=1),
    FocusArea(id="maintainability", name="Maintainability", enabled=True, weight=1),
)


@dataclass(frozen=True)
class ConversationContext:
    """
    Accumulated state driving the next request.

    The idea never changes for a session; turns are only appended and the
    round only moves forward, both through ``with_turns``.
    """

    idea: str
    turns: tuple[RefinementTurn, ...] = ()
    stacks: frozenset[str] = frozenset()
    round: int = 1
    max_rounds: int = 5
    complexity: Complexity = "detailed"
    output_style: OutputStyle = "professional"
    output_format: OutputFormat = "Markdown"
    focus_areas: tuple[FocusArea, ...] = DEFAULT_FOCUS_AREAS

    def with_turns(self, new_turns: list[RefinementTurn]) -> "ConversationContext":
        """
        Return a copy with the answers of one batch appended and the round advanced.

        Args:
            new_turns (list[RefinementTurn]): Turns recorded for the current batch.

        Returns:
            ConversationContext: The next context.
        """
        return replace(self, turns=self.turns + tuple(new_turns), round=self.round + 1)

    @property
    def enabled_focus_areas(self) -> list[FocusArea]:
        return [fa for fa in self.focus_areas if fa.enabled and fa.weight > 0]


@dataclass(frozen=True)
class RefiningResult:
    """The model needs answers to a batch of questions."""

    questions: tuple[RefinementQuestion, ...]
    status: Literal["refining"] = "refining"


@dataclass(frozen=True)
class CompleteResult:
    """The model produced final prompts."""

    final_prompts: tuple[str, ...]
    confidence: int = 85
    suggested_approach: Approach = "comprehensive"
    next_steps: tuple[str, ...] = ()
    status: Literal["complete"] = "complete"


@dataclass(frozen=True)
class ErrorResult:
    """A surfaced failure."""

    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    status: Literal["error"] = "error"


OrchestrationResult = Union[RefiningResult, CompleteResult, ErrorResult]


@dataclass(frozen=True)
class RetryAttemptRecord:
    """Ephemeral description of one attempt inside the retry loop."""

    attempt: int
    delay: float
    retryable: bool | None = None


@dataclass(frozen=True)
class GenerationRequest:
    """A fully built request for the transport."""

    model: str
    contents: str
    system_instruction: str
    response_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnswerSubmission:
    """An answer submitted by the UI for one question."""

    question_id: str
    answer: str


@dataclass
class PromptHistoryItem:
    """A completed refinement, persisted as a whole."""

    idea: str
    final_prompts: list[str]
    turns: list[RefinementTurn] = field(default_factory=list)
    confidence: int | None = None
    suggested_approach: str | None = None
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "originalPrompt": self.idea,
            "conversationHistory": [t.to_dict() for t in self.turns],
            "finalPrompts": list(self.final_prompts),
            "confidence": self.confidence,
            "suggestedApproach": self.suggested_approach,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class TelemetryEvent:
    """A single observability record."""

    timestamp: str
    kind: str
    payload: dict[str, Any]


class Transport(Protocol):
    """Interface for sending one generation request."""

    async def generate(
        self, request: GenerationRequest, api_key: str
    ) -> str:  # pragma: no cover - interface
        """Return the raw response text or raise TransportError."""
        ...


class HistoryStore(Protocol):
    """Interface for persisting completed refinements."""

    def load_history(self) -> list[PromptHistoryItem]:  # pragma: no cover - interface
        """Return stored items, newest first."""
        ...

    def save_history(
        self, items: list[PromptHistoryItem]
    ) -> None:  # pragma: no cover - interface
        """Persist the given items as the complete history."""
        ...


class CredentialProvider(Protocol):
    """Interface for reading the service credential."""

    def get_credential(self) -> str | None:  # pragma: no cover - interface
        """Return the credential or None when not configured."""
        ...


class TelemetrySink(Protocol):
    """Interface for recording observability events."""

    def record(self, event: TelemetryEvent) -> None:  # pragma: no cover - interface
        """Record one event. Must not block."""
        ...
