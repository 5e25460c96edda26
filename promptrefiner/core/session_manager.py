from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from promptrefiner.agents.errors import ErrorKind, InvalidTransitionError, RefinementError
from promptrefiner.agents.orchestrator import RefinementOrchestrator
from promptrefiner.agents.types import (
    DEFAULT_FOCUS_AREAS,
    AnswerSubmission,
    CompleteResult,
    ConversationContext,
    ErrorResult,
    FocusArea,
    HistoryStore,
    PromptHistoryItem,
    RefinementQuestion,
    RefinementTurn,
    RefiningResult,
    RetryAttemptRecord,
    SessionState,
)
from promptrefiner.utils.env_cfg import load_session_env

NO_ANSWER = "No answer provided"


class SessionTransitions:
    """
    Allowed moves between session states.
    """

    VALID_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
        SessionState.IDLE: frozenset({SessionState.LOADING}),
        SessionState.LOADING: frozenset(
            {SessionState.REFINING, SessionState.FINAL, SessionState.ERROR}
        ),
        SessionState.REFINING: frozenset({SessionState.LOADING}),
        SessionState.FINAL: frozenset({SessionState.IDLE}),
        SessionState.ERROR: frozenset({SessionState.IDLE}),
    }

    @classmethod
    def is_valid(cls, from_state: SessionState, to_state: SessionState) -> bool:
        return to_state in cls.VALID_TRANSITIONS.get(from_state, frozenset())

    @classmethod
    def require(cls, from_state: SessionState, to_state: SessionState) -> None:
        """
        Raise if the move is not allowed.

        Args:
            from_state (SessionState): The current state.
            to_state (SessionState): The requested state.

        Raises:
            InvalidTransitionError: If the transition is not in the table.
        """
        if not cls.is_valid(from_state, to_state):
            logger.error(
                "InvalidTransitionError: {} -> {} is not allowed.",
                from_state.value,
                to_state.value,
            )
            raise InvalidTransitionError(
                f"Cannot move from '{from_state.value}' to '{to_state.value}'."
            )


@dataclass
class SessionPreferences:
    """
    User preferences applied to every new session.
    """

    stacks: frozenset[str] = frozenset()
    max_rounds: int = 5
    complexity: str = "detailed"
    output_style: str = "professional"
    output_format: str = "Markdown"
    focus_areas: tuple[FocusArea, ...] = DEFAULT_FOCUS_AREAS

    @classmethod
    def from_env(cls) -> "SessionPreferences":
        cfg = load_session_env()
        return cls(
            max_rounds=cfg.max_rounds,
            complexity=cfg.complexity,
            output_style=cfg.output_style,
            output_format=cfg.output_format,
        )

    def new_context(self, idea: str) -> ConversationContext:
        return ConversationContext(
            idea=idea,
            stacks=frozenset(self.stacks),
            max_rounds=self.max_rounds,
            complexity=self.complexity,  # type: ignore[arg-type]
            output_style=self.output_style,  # type: ignore[arg-type]
            output_format=self.output_format,  # type: ignore[arg-type]
            focus_areas=tuple(self.focus_areas),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Read-only view of a session handed to listeners.
    """

    state: SessionState
    idea: str | None
    round: int
    questions: tuple[RefinementQuestion, ...]
    turns: tuple[RefinementTurn, ...]
    final: CompleteResult | None
    error: ErrorResult | None
    auth_required: bool
    pending_idea: str | None
    attempt: RetryAttemptRecord | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "idea": self.idea,
            "round": self.round,
            "questions": [q.to_dict() for q in self.questions],
            "turns": [t.to_dict() for t in self.turns],
            "final": (
                {
                    "finalPrompts": list(self.final.final_prompts),
                    "confidence": self.final.confidence,
                    "suggestedApproach": self.final.suggested_approach,
                    "nextSteps": list(self.final.next_steps),
                }
                if self.final
                else None
            ),
            "error": (
                {"message": self.error.message, "kind": self.error.kind.value}
                if self.error
                else None
            ),
            "authRequired": self.auth_required,
            "pendingIdea": self.pending_idea,
            "attempt": (
                {
                    "attempt": self.attempt.attempt,
                    "delayMs": int(self.attempt.delay * 1000),
                    "retryable": self.attempt.retryable,
                }
                if self.attempt
                else None
            ),
        }


Listener = Callable[[SessionSnapshot], None]


@dataclass
class SessionManager:
    """
    Owns one refinement session: its state, context, questions and the history list.
    """

    orchestrator: RefinementOrchestrator
    store: HistoryStore
    preferences: SessionPreferences = field(default_factory=SessionPreferences)
    state: SessionState = field(default=SessionState.IDLE, init=False)
    context: ConversationContext | None = field(default=None, init=False)
    questions: tuple[RefinementQuestion, ...] = field(default=(), init=False)
    final: CompleteResult | None = field(default=None, init=False)
    error: ErrorResult | None = field(default=None, init=False)
    auth_required: bool = field(default=False, init=False)
    pending_idea: str | None = field(default=None, init=False)
    attempt: RetryAttemptRecord | None = field(default=None, init=False)
    history: list[PromptHistoryItem] = field(default_factory=list, init=False)
    _listeners: list[Listener] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """
        Post-initialization to load stored history.
        """
        self.history = list(self.store.load_history())
        logger.debug("Loaded {} history items", len(self.history))

    # --- observation ---

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> SessionSnapshot:
        """
        Capture the current session state.

        Returns:
            SessionSnapshot: An immutable view of the session.
        """
        return SessionSnapshot(
            state=self.state,
            idea=self.context.idea if self.context else None,
            round=self.context.round if self.context else 0,
            questions=self.questions,
            turns=self.context.turns if self.context else (),
            final=self.final,
            error=self.error,
            auth_required=self.auth_required,
            pending_idea=self.pending_idea,
            attempt=self.attempt,
        )

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as e:
                logger.warning("Session listener failed: {}", e)

    def _move(self, to_state: SessionState) -> None:
        SessionTransitions.require(self.state, to_state)
        logger.debug("Session {} -> {}", self.state.value, to_state.value)
        self.state = to_state
        self._notify()

    def _require_context(self) -> ConversationContext:
        if self.context is None:
            logger.error("RuntimeError: No conversation context is active.")
            raise RuntimeError("No conversation context is active.")
        return self.context

    def _require_state(self, expected: SessionState, operation: str) -> None:
        if self.state is not expected:
            logger.error(
                "InvalidTransitionError: {} is not allowed in state {}.", operation, self.state.value
            )
            raise InvalidTransitionError(
                f"Cannot {operation} while the session is '{self.state.value}'."
            )

    # --- credentials ---

    def has_credential(self) -> bool:
        key = self.orchestrator.credentials.get_credential()
        return bool(key and key.strip())

    # --- operations ---

    def set_preferences(self, preferences: SessionPreferences) -> None:
        """
        Replace the preferences used for the next session.

        Args:
            preferences (SessionPreferences): The new preferences.

        Raises:
            InvalidTransitionError: If a session is in progress.
        """
        self._require_state(SessionState.IDLE, "change preferences")
        self.preferences = preferences

    async def start(self, idea: str) -> SessionSnapshot:
        """
        Start refining an idea.

        Without a credential nothing is dispatched: the idea is kept as pending
        and ``auth_required`` is set.

        Args:
            idea (str): The user's rough idea.

        Returns:
            SessionSnapshot: The state after the request settled.

        Raises:
            InvalidTransitionError: If the session is not idle.
            ValueError: If the idea is blank.
        """
        self._require_state(SessionState.IDLE, "start")
        text = (idea or "").strip()
        if not text:
            logger.error("ValueError: idea must not be empty.")
            raise ValueError("Idea must not be empty.")

        if not self.has_credential():
            logger.warning("No API key configured; holding idea until one is set.")
            self.auth_required = True
            self.pending_idea = text
            self._notify()
            return self.snapshot()

        self.auth_required = False
        self.pending_idea = None
        self.context = self.preferences.new_context(text)
        self.questions = ()
        self.final = None
        self.error = None
        await self._dispatch()
        return self.snapshot()

    async def resume_pending(self) -> SessionSnapshot:
        """
        Start the idea held back for a missing credential.

        Returns:
            SessionSnapshot: The state after the request settled.

        Raises:
            ValueError: If no idea is pending.
        """
        if not self.pending_idea:
            logger.error("ValueError: no pending idea to resume.")
            raise ValueError("No pending idea to resume.")
        return await self.start(self.pending_idea)

    def _build_turns(
        self, answers: list[AnswerSubmission], round_number: int
    ) -> list[RefinementTurn]:
        by_id = {q.id: q for q in self.questions}
        unknown = [a.question_id for a in answers if a.question_id not in by_id]
        if unknown:
            logger.error("ValueError: unknown question ids {}", unknown)
            raise ValueError(f"Unknown question ids: {', '.join(unknown)}")

        given = {a.question_id: (a.answer or "").strip() for a in answers}
        missing = [q.id for q in self.questions if q.required and not given.get(q.id)]
        if missing:
            logger.error("ValueError: required questions unanswered {}", missing)
            raise ValueError(f"Required questions are unanswered: {', '.join(missing)}")

        return [
            RefinementTurn(
                question_id=q.id,
                question=q.question,
                answer=given.get(q.id) or NO_ANSWER,
                kind=q.kind,
                required=q.required,
                round=round_number,
            )
            for q in self.questions
        ]

    async def submit(self, answers: list[AnswerSubmission]) -> SessionSnapshot:
        """
        Record answers for the current question batch and request the next step.

        Args:
            answers (list[AnswerSubmission]): One answer per question id.

        Returns:
            SessionSnapshot: The state after the request settled.

        Raises:
            InvalidTransitionError: If no question batch is awaiting answers.
            ValueError: For unknown question ids or unanswered required questions.
        """
        self._require_state(SessionState.REFINING, "submit")
        context = self._require_context()
        turns = self._build_turns(answers, context.round)
        self.context = context.with_turns(turns)
        self.questions = ()
        logger.info("Recorded {} answers; moving to round {}", len(turns), self.context.round)
        await self._dispatch()
        return self.snapshot()

    def acknowledge(self) -> SessionSnapshot:
        """
        Return a finished or failed session to idle.

        Returns:
            SessionSnapshot: The idle state.

        Raises:
            InvalidTransitionError: If the session is not final or error.
        """
        SessionTransitions.require(self.state, SessionState.IDLE)
        self.context = None
        self.questions = ()
        self.final = None
        self.error = None
        self.attempt = None
        self._move(SessionState.IDLE)
        return self.snapshot()

    # --- dispatch ---

    def _on_attempt(self, record: RetryAttemptRecord) -> None:
        self.attempt = record
        self._notify()

    async def _dispatch(self) -> None:
        context = self._require_context()
        self.attempt = None
        self._move(SessionState.LOADING)
        try:
            result = await self.orchestrator.run(context, on_attempt=self._on_attempt)
        except RefinementError as e:
            logger.error("Refinement failed ({}): {}", e.kind.value, e.message)
            self._fail(ErrorResult(message=e.message, kind=e.kind))
            return
        except Exception as e:
            logger.exception("Unexpected failure during refinement: {}", e)
            self._fail(ErrorResult(message=RefinementError(ErrorKind.UNKNOWN).message))
            return

        if isinstance(result, RefiningResult):
            self.questions = result.questions
            self._move(SessionState.REFINING)
        elif isinstance(result, CompleteResult):
            self.final = result
            self._record_history(result)
            self._move(SessionState.FINAL)
        else:
            self._fail(ErrorResult(message=RefinementError(ErrorKind.UNKNOWN).message))

    def _fail(self, error: ErrorResult) -> None:
        self.error = error
        self._move(SessionState.ERROR)

    def _record_history(self, result: CompleteResult) -> None:
        context = self._require_context()
        item = PromptHistoryItem(
            idea=context.idea,
            final_prompts=list(result.final_prompts),
            turns=list(context.turns),
            confidence=result.confidence,
            suggested_approach=result.suggested_approach,
        )
        try:
            stored = list(self.store.load_history())
        except Exception as e:
            logger.exception("Failed to reload history before saving: {}", e)
            stored = list(self.history)
        self.history = [item, *stored]
        self._save_history()

    def _save_history(self) -> None:
        try:
            self.store.save_history(list(self.history))
        except Exception as e:
            logger.exception("Failed to persist history: {}", e)

    # --- history ---

    def get_history_item(self, item_id: str) -> PromptHistoryItem | None:
        return next((h for h in self.history if h.id == item_id), None)

    def delete_history(self, item_id: str) -> bool:
        """
        Delete one history entry.

        Args:
            item_id (str): The entry id.

        Returns:
            bool: True if the entry existed and was removed.
        """
        current = list(self.store.load_history())
        remaining = [h for h in current if h.id != item_id]
        if len(remaining) == len(current):
            self.history = current
            return False
        self.history = remaining
        self._save_history()
        return True

    def clear_history(self) -> None:
        self.history = []
        self._save_history()
