"""Response repair pipeline: parse, coerce, then synthesize.

Each stage is a pure function that either returns a canonical result or
``None`` to hand over to the next stage. Only the pipeline itself emits
telemetry.
"""

import json
import re
from dataclasses import replace
from typing import Any, Iterable

from json_repair import repair_json
from loguru import logger

from promptrefiner.agents.errors import ErrorKind, RefinementError
from promptrefiner.agents.types import (
    APPROACHES,
    CompleteResult,
    QuestionKind,
    RefinementQuestion,
    RefiningResult,
)
from promptrefiner.utils.telemetry import Telemetry

REFINING_STATUSES = frozenset({"refining", "refining_further"})
COMPLETE_STATUS = "complete"
NEEDS_MORE_CONTEXT = "needs_more_context"

MAX_QUESTIONS = 4
MIN_ANSWERS = 2
MAX_ANSWERS = 4
DEFAULT_CONFIDENCE = 85
DEFAULT_APPROACH = "comprehensive"
HEURISTIC_CONFIDENCE = 60
MAX_EMBEDDED_CANDIDATES = 64
MAX_REPAIR_CHARS = 100_000
MAX_REPAIR_DEPTH = 64

# Failures json.loads raises for malformed or absurdly nested text
PARSE_ERRORS = (ValueError, TypeError, RecursionError)

FILLER_ANSWERS: tuple[str, ...] = ("Not sure yet", "Other (please specify)")

QUESTION_KEYS = ("questions", "question")
PROMPT_KEYS = ("finalPrompts", "final_prompts", "prompts", "prompt", "result")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)

CanonicalResult = RefiningResult | CompleteResult


# --- small coercion helpers ---


def _pick(data: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return default


def _clean_strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for v in values:
        if isinstance(v, str) and v.strip():
            out.append(v.strip())
    return list(dict.fromkeys(out))


def _normalize_confidence(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if number != number:  # NaN
        return DEFAULT_CONFIDENCE
    return int(max(0, min(100, round(number))))


def _normalize_approach(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in APPROACHES:
        return value.strip().lower()
    return DEFAULT_APPROACH


def _status_of(data: dict[str, Any]) -> str | None:
    status = data.get("status")
    if isinstance(status, str) and status.strip():
        return status.strip().lower()
    return None


# --- question normalization ---


def _normalize_question(
    item: Any, index: int, lenient: bool
) -> RefinementQuestion | None:
    """
    Turn one raw question into a RefinementQuestion with every default filled.

    Args:
        item (Any): The raw question (object, or string when lenient).
        index (int): Position in the batch, used for the default id.
        lenient (bool): Accept aliases, plain strings and short answer lists.

    Returns:
        RefinementQuestion | None: The question, or None if unusable.
    """
    if isinstance(item, str) and lenient:
        item = {"question": item}
    if not isinstance(item, dict):
        return None

    text_keys = ("question", "text", "prompt") if lenient else ("question",)
    text = _pick(item, text_keys)
    if not isinstance(text, str) or not text.strip():
        return None

    answer_keys = (
        ("answers", "options", "suggestions", "suggestedAnswers")
        if lenient
        else ("answers",)
    )
    answers = _clean_strings(_pick(item, answer_keys))[:MAX_ANSWERS]
    padded = False
    if len(answers) < MIN_ANSWERS:
        if not lenient:
            return None
        for filler in FILLER_ANSWERS:
            if len(answers) >= MIN_ANSWERS:
                break
            if filler not in answers:
                answers.append(filler)
                padded = True

    qid = item.get("id")
    qid = str(qid).strip() if qid is not None and str(qid).strip() else f"q{index + 1}"

    custom_keys = ("allowCustom", "allow_custom") if lenient else ("allowCustom",)
    depends_keys = ("dependsOn", "depends_on") if lenient else ("dependsOn",)
    kind_keys = ("type", "kind", "questionType") if lenient else ("type",)

    return RefinementQuestion(
        id=qid,
        question=text.strip(),
        answers=tuple(answers),
        kind=QuestionKind.coerce(_pick(item, kind_keys)),
        allow_custom=True if padded else _as_bool(_pick(item, custom_keys), True),
        required=_as_bool(item.get("required"), False),
        depends_on=tuple(_clean_strings(_pick(item, depends_keys))),
    )


def _finalize_questions(
    questions: list[RefinementQuestion],
) -> tuple[RefinementQuestion, ...]:
    """
    Cap the batch, make ids unique and drop dependencies outside the batch.
    """
    seen: dict[str, int] = {}
    unique: list[RefinementQuestion] = []
    for q in questions[:MAX_QUESTIONS]:
        count = seen.get(q.id, 0) + 1
        seen[q.id] = count
        unique.append(q if count == 1 else replace(q, id=f"{q.id}-{count}"))
    ids = {q.id for q in unique}
    return tuple(
        replace(q, depends_on=tuple(d for d in q.depends_on if d in ids and d != q.id))
        for q in unique
    )


def needs_more_context_result() -> RefiningResult:
    """
    Synthesized batch used when the model says it lacks context.

    Returns:
        RefiningResult: One required clarification question.
    """
    return RefiningResult(
        questions=(
            RefinementQuestion(
                id="q1",
                question="Could you share more context about what you want to achieve?",
                answers=(
                    "Describe the goal in more detail",
                    "Share an example of the expected output",
                    "Explain who will use the result",
                ),
                kind=QuestionKind.CLARIFICATION,
                allow_custom=True,
                required=True,
            ),
        )
    )


# --- stage 1 ---


def validate(data: Any) -> CanonicalResult | None:
    """
    Validate an already parsed response against the canonical shape.

    Defaultable fields are filled; anything structurally off returns None.

    Args:
        data (Any): The parsed response.

    Returns:
        CanonicalResult | None: The canonical result, or None when validation fails.
    """
    if not isinstance(data, dict):
        return None
    status = _status_of(data)

    if status == NEEDS_MORE_CONTEXT:
        return needs_more_context_result()

    if status in REFINING_STATUSES:
        raw_questions = data.get("questions")
        if not isinstance(raw_questions, list) or not raw_questions:
            return None
        questions: list[RefinementQuestion] = []
        for i, item in enumerate(raw_questions):
            q = _normalize_question(item, i, lenient=False)
            if q is None:
                return None
            questions.append(q)
        return RefiningResult(questions=_finalize_questions(questions))

    if status == COMPLETE_STATUS:
        raw_prompts = data.get("finalPrompts")
        if not isinstance(raw_prompts, list) or not raw_prompts:
            return None
        if not all(isinstance(p, str) and p.strip() for p in raw_prompts):
            return None
        return CompleteResult(
            final_prompts=tuple(p.strip() for p in raw_prompts),
            confidence=_normalize_confidence(data.get("confidence", DEFAULT_CONFIDENCE)),
            suggested_approach=_normalize_approach(data.get("suggestedApproach")),  # type: ignore[arg-type]
            next_steps=tuple(_clean_strings(data.get("nextSteps"))),
        )

    return None


def parse_direct(raw: str) -> CanonicalResult | None:
    """
    Stage 1: parse the raw text as JSON and validate it.

    Args:
        raw (str): The raw response text.

    Returns:
        CanonicalResult | None: The canonical result or None.
    """
    try:
        data = json.loads(raw)
    except PARSE_ERRORS:
        return None
    return validate(data)


# --- stage 2 ---


def _coerce_questions(data: dict[str, Any]) -> RefiningResult | None:
    raw = _pick(data, QUESTION_KEYS)
    if isinstance(raw, (dict, str)):
        raw = [raw]
    if not isinstance(raw, list):
        return None
    questions = [
        q
        for q in (_normalize_question(item, i, lenient=True) for i, item in enumerate(raw))
        if q is not None
    ]
    if not questions:
        return None
    return RefiningResult(questions=_finalize_questions(questions))


def _coerce_prompts(data: dict[str, Any]) -> CompleteResult | None:
    raw = _pick(data, PROMPT_KEYS)
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return None
    prompts: list[str] = []
    for item in raw:
        if isinstance(item, dict):
            item = _pick(item, ("prompt", "content", "text"))
        if isinstance(item, str) and item.strip():
            prompts.append(item.strip())
    if not prompts:
        return None
    return CompleteResult(
        final_prompts=tuple(prompts),
        confidence=_normalize_confidence(data.get("confidence", DEFAULT_CONFIDENCE)),
        suggested_approach=_normalize_approach(  # type: ignore[arg-type]
            _pick(data, ("suggestedApproach", "suggested_approach", "approach"))
        ),
        next_steps=tuple(_clean_strings(_pick(data, ("nextSteps", "next_steps")))),
    )


def coerce(data: Any) -> CanonicalResult | None:
    """
    Coerce a parsed object that failed validation.

    A missing or unknown status is inferred from the payload keys; aliases
    and single values are accepted and every default is back-filled.

    Args:
        data (Any): The parsed response.

    Returns:
        CanonicalResult | None: The canonical result or None.
    """
    if isinstance(data, list):
        if data and all(isinstance(it, dict) and "question" in it for it in data):
            data = {"status": "refining", "questions": data}
        else:
            return None
    if not isinstance(data, dict):
        return None

    status = _status_of(data)
    if status == NEEDS_MORE_CONTEXT:
        return needs_more_context_result()

    has_questions = _pick(data, QUESTION_KEYS) is not None
    has_prompts = _pick(data, PROMPT_KEYS) is not None

    if status in REFINING_STATUSES or (status != COMPLETE_STATUS and has_questions):
        return _coerce_questions(data) or (_coerce_prompts(data) if has_prompts else None)
    if status == COMPLETE_STATUS or has_prompts:
        return _coerce_prompts(data) or (_coerce_questions(data) if has_questions else None)
    return None


def _nesting_depth(text: str) -> int:
    depth = 0
    deepest = 0
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth:
            in_string = True
        elif ch in "{[":
            depth += 1
            deepest = max(deepest, depth)
        elif ch in "}]" and depth:
            depth -= 1
    return deepest


def strip_code_fences(text: str) -> str:
    """
    Return the body of the first fenced block, or the text unchanged.

    Args:
        text (str): Raw text possibly wrapped in markdown fences.

    Returns:
        str: The unwrapped text.
    """
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text


def extract_json_objects(text: str) -> list[str]:
    """
    Locate balanced ``{...}`` spans inside surrounding prose.

    The text is scanned once. Quotes only open strings inside an object, so
    apostrophes and quotes in the prose do not hide a later object. Spans are
    returned in order of their opening brace, so an enclosing object comes
    before the objects nested in it.

    Args:
        text (str): The text to scan.

    Returns:
        list[str]: Candidate object substrings.
    """
    spans: list[tuple[int, int]] = []
    open_braces: list[int] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and open_braces:
            in_string = True
        elif ch == "{":
            open_braces.append(i)
        elif ch == "}" and open_braces:
            spans.append((open_braces.pop(), i))
    spans.sort()
    return [text[start : end + 1] for start, end in spans[:MAX_EMBEDDED_CANDIDATES]]


def _loads_strict(text: str) -> Any | None:
    try:
        return json.loads(text)
    except PARSE_ERRORS:
        return None


def _loads_repaired(text: str) -> Any | None:
    """
    Parse malformed JSON (trailing commas, single quotes, unclosed brackets).

    Oversized or deeply nested text is skipped.

    Args:
        text (str): A candidate JSON text.

    Returns:
        Any | None: The repaired object, or None when nothing could be recovered.
    """
    if "{" not in text and "[" not in text:
        return None
    if len(text) > MAX_REPAIR_CHARS or _nesting_depth(text) > MAX_REPAIR_DEPTH:
        logger.debug("Skipping JSON repair for oversized or deeply nested text")
        return None
    try:
        return repair_json(text, return_objects=True)
    except PARSE_ERRORS as e:
        logger.debug("JSON repair failed: {}", e)
        return None


def repair_embedded(raw: str) -> CanonicalResult | None:
    """
    Stage 2 for unparseable text: find an object inside prose and use it.

    Every candidate is first parsed strictly; only when none of them yields a
    result are the same candidates run through ``json_repair``.

    Args:
        raw (str): The raw response text.

    Returns:
        CanonicalResult | None: The canonical result or None.
    """
    unfenced = strip_code_fences(raw)
    texts = [unfenced] + extract_json_objects(unfenced)
    for loader in (_loads_strict, _loads_repaired):
        for text in texts:
            data = loader(text)
            if data is None:
                continue
            result = validate(data) or coerce(data)
            if result is not None:
                return result
    return None


# --- stage 3 ---


def placeholder_prompts(idea: str | None) -> tuple[str, str]:
    """
    Two generic prompts used when nothing structured could be recovered.

    Args:
        idea (str | None): The user's idea, when known.

    Returns:
        tuple[str, str]: The placeholder prompts.
    """
    task = idea.strip() if idea and idea.strip() else "the task described by the user"
    return (
        f"Act as an expert assistant. Help me with the following task: {task}. "
        "Ask for any missing details before you begin, and structure your answer "
        "with clear sections.",
        f"You are a senior specialist. Produce a detailed, step-by-step solution for: "
        f"{task}. State your assumptions, cover important edge cases, and finish with "
        "a short summary.",
    )


def heuristic_fallback(raw: str, idea: str | None = None) -> CanonicalResult | None:
    """
    Stage 3: synthesize a usable result from question-like cues.

    Args:
        raw (str): The raw response text.
        idea (str | None, optional): The user's idea for placeholder prompts. Defaults to None.

    Returns:
        CanonicalResult | None: A synthesized result, or None when the text
            carries no readable content at all.
    """
    if not re.search(r"[A-Za-z0-9]", raw):
        return None
    lowered = raw.lower()
    if "question" in lowered or "?" in raw:
        return RefiningResult(
            questions=(
                RefinementQuestion(
                    id="q1",
                    question="Could you provide more details about what you want to achieve?",
                    answers=(
                        "More specific requirements",
                        "Example use cases",
                        "Technical constraints",
                    ),
                    kind=QuestionKind.CLARIFICATION,
                    allow_custom=True,
                    required=False,
                ),
            )
        )
    return CompleteResult(
        final_prompts=placeholder_prompts(idea),
        confidence=HEURISTIC_CONFIDENCE,
        suggested_approach=DEFAULT_APPROACH,
    )


class ResponseRepairPipeline:
    """
    Three-stage funnel turning raw model text into a canonical result.

    Holds no per-call state; the same instance serves every request.
    """

    def __init__(self, telemetry: Telemetry | None = None) -> None:
        """
        Initialize the ResponseRepairPipeline.

        Args:
            telemetry (Telemetry | None, optional): Receives stage events. Defaults to a disabled instance.
        """
        self.telemetry = telemetry or Telemetry(enabled=False)

    def repair(self, raw: str | None, idea: str | None = None) -> CanonicalResult:
        """
        Run the pipeline and return the canonical result.

        Args:
            raw (str | None): The raw response text.
            idea (str | None, optional): The user's idea, used by the heuristic stage. Defaults to None.

        Returns:
            CanonicalResult: A refining or complete result.

        Raises:
            RefinementError: EmptyResponse for blank text, Unparseable when no stage applies.
        """
        return self.repair_with_stage(raw, idea)[0]

    def repair_with_stage(
        self, raw: str | None, idea: str | None = None
    ) -> tuple[CanonicalResult, str]:
        """
        Run the pipeline and report which stage produced the result.

        Args:
            raw (str | None): The raw response text.
            idea (str | None, optional): The user's idea. Defaults to None.

        Returns:
            tuple[CanonicalResult, str]: The result and one of "direct", "structural", "heuristic".

        Raises:
            RefinementError: EmptyResponse for blank text, Unparseable when no stage applies.
        """
        text = (raw or "").strip()
        if not text:
            logger.error("EmptyResponse: The AI returned an empty response.")
            self.telemetry.emit("error", {"kind": ErrorKind.EMPTY_RESPONSE.value})
            raise RefinementError(ErrorKind.EMPTY_RESPONSE)

        logger.debug("Repair stage 1 (direct parse) entered")
        parsed: Any = None
        parse_failed = False
        try:
            parsed = json.loads(text)
        except PARSE_ERRORS as e:
            parse_failed = True
            logger.info("Direct parse failed: {}", e)
            self.telemetry.emit("parse_error", {"error": str(e), "raw": text[:2000]})

        if not parse_failed:
            result = validate(parsed)
            if result is not None:
                logger.debug("Direct parse produced a '{}' result", result.status)
                self.telemetry.emit("parse_success", {"stage": "direct", "parsed": parsed})
                return result, "direct"
            logger.info("Validation failed for parsed response")
            self.telemetry.emit("validation_error", {"dataReceived": parsed})

        logger.debug("Repair stage 2 (structural repair) entered")
        if parse_failed:
            result = repair_embedded(text)
            event = "fallback_success"
        else:
            result = coerce(parsed)
            event = "validation_fallback_success"
        if result is not None:
            logger.info("Structural repair produced a '{}' result", result.status)
            self.telemetry.emit(event, {"stage": "structural", "status": result.status})
            return result, "structural"

        logger.debug("Repair stage 3 (heuristic fallback) entered")
        result = heuristic_fallback(text, idea)
        if result is not None:
            logger.warning(
                "Heuristic fallback synthesized a '{}' result from unstructured text",
                result.status,
            )
            self.telemetry.emit(
                "heuristic_fallback", {"stage": "heuristic", "status": result.status}
            )
            return result, "heuristic"

        logger.error("Unparseable: no repair stage produced a usable result.")
        self.telemetry.emit("error", {"kind": ErrorKind.UNPARSEABLE.value, "raw": text[:2000]})
        raise RefinementError(ErrorKind.UNPARSEABLE)
