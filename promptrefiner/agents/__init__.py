"""Refinement orchestration package.

Provides the request contract, response repair, retry policy and the
orchestrator that turns a conversation context into the next step.
"""

from promptrefiner.agents.errors import (
    ErrorKind,
    InvalidTransitionError,
    RefinementError,
    RetryExhaustedError,
    TransportError,
)
from promptrefiner.agents.types import (
    AnswerSubmission,
    CompleteResult,
    ConversationContext,
    ErrorResult,
    FocusArea,
    GenerationRequest,
    PromptHistoryItem,
    QuestionKind,
    RefinementQuestion,
    RefinementTurn,
    RefiningResult,
    SessionState,
)
from promptrefiner.agents.policies import RetryConfig, RetryController
from promptrefiner.agents.repair import ResponseRepairPipeline
from promptrefiner.agents.context import ConversationContextBuilder, estimate_complexity
from promptrefiner.agents.orchestrator import RefinementOrchestrator

__all__ = [
    "AnswerSubmission",
    "CompleteResult",
    "ConversationContext",
    "ConversationContextBuilder",
    "ErrorKind",
    "ErrorResult",
    "FocusArea",
    "GenerationRequest",
    "InvalidTransitionError",
    "PromptHistoryItem",
    "QuestionKind",
    "RefinementError",
    "RefinementOrchestrator",
    "RefinementQuestion",
    "RefinementTurn",
    "RefiningResult",
    "ResponseRepairPipeline",
    "RetryConfig",
    "RetryController",
    "RetryExhaustedError",
    "SessionState",
    "TransportError",
    "estimate_complexity",
]
