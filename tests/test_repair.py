import json
import time

import pytest

from promptrefiner.agents.errors import ErrorKind, RefinementError
from promptrefiner.agents.repair import (
    FILLER_ANSWERS,
    ResponseRepairPipeline,
    coerce,
    extract_json_objects,
    heuristic_fallback,
    parse_direct,
    strip_code_fences,
    validate,
)
from promptrefiner.agents.types import CompleteResult, QuestionKind, RefiningResult
from promptrefiner.utils.telemetry import InMemoryTelemetry, Telemetry


@pytest.fixture
def pipeline_with_buffer() -> tuple[ResponseRepairPipeline, InMemoryTelemetry]:
    buffer = InMemoryTelemetry()
    return ResponseRepairPipeline(telemetry=Telemetry(sink=buffer)), buffer


def test_direct_refining_keeps_given_fields() -> None:
    raw = json.dumps(
        {
            "status": "refining",
            "questions": [
                {
                    "id": "lang",
                    "type": "specification",
                    "question": "Which language?",
                    "answers": ["JS", "Python", "Go"],
                    "allowCustom": False,
                    "required": True,
                }
            ],
        }
    )
    result = parse_direct(raw)
    assert isinstance(result, RefiningResult)
    (q,) = result.questions
    assert q.id == "lang"
    assert q.kind is QuestionKind.SPECIFICATION
    assert q.answers == ("JS", "Python", "Go")
    assert q.allow_custom is False
    assert q.required is True
    assert q.depends_on == ()


def test_direct_refining_fills_defaults() -> None:
    raw = '{"status":"refining","questions":[{"question":"Which language?","answers":["JS","Python"]}]}'
    result = parse_direct(raw)
    assert isinstance(result, RefiningResult)
    q = result.questions[0]
    assert q.id == "q1"
    assert q.kind is QuestionKind.CLARIFICATION
    assert q.allow_custom is True
    assert q.required is False
    assert q.depends_on == ()


def test_direct_complete_fills_defaults() -> None:
    result = parse_direct('{"status":"complete","finalPrompts":["Prompt A","Prompt B"]}')
    assert result == CompleteResult(
        final_prompts=("Prompt A", "Prompt B"),
        confidence=85,
        suggested_approach="comprehensive",
        next_steps=(),
    )


def test_direct_complete_keeps_given_fields() -> None:
    raw = json.dumps(
        {
            "status": "complete",
            "finalPrompts": ["P"],
            "confidence": 92,
            "suggestedApproach": "concise",
            "nextSteps": ["Try it"],
        }
    )
    result = parse_direct(raw)
    assert isinstance(result, CompleteResult)
    assert result.confidence == 92
    assert result.suggested_approach == "concise"
    assert result.next_steps == ("Try it",)


def test_refining_further_is_alias_for_refining() -> None:
    raw = '{"status":"refining_further","questions":[{"question":"Q?","answers":["a","b"]}]}'
    assert isinstance(parse_direct(raw), RefiningResult)


def test_needs_more_context_is_remapped_to_one_question() -> None:
    result = validate({"status": "needs_more_context"})
    assert isinstance(result, RefiningResult)
    assert len(result.questions) == 1
    assert result.questions[0].kind is QuestionKind.CLARIFICATION


def test_validate_caps_answers_and_questions_and_drops_unknown_dependencies() -> None:
    questions = [
        {"id": f"q{i}", "question": f"Q{i}?", "answers": ["a", "b", "c", "d", "e"]}
        for i in range(1, 7)
    ]
    questions[1]["dependsOn"] = ["q1", "missing"]
    result = validate({"status": "refining", "questions": questions})
    assert isinstance(result, RefiningResult)
    assert len(result.questions) == 4
    assert all(len(q.answers) == 4 for q in result.questions)
    assert result.questions[1].depends_on == ("q1",)


def test_validate_makes_duplicate_ids_unique() -> None:
    result = validate(
        {
            "status": "refining",
            "questions": [
                {"id": "x", "question": "A?", "answers": ["1", "2"]},
                {"id": "x", "question": "B?", "answers": ["1", "2"]},
            ],
        }
    )
    assert isinstance(result, RefiningResult)
    assert [q.id for q in result.questions] == ["x", "x-2"]


@pytest.mark.parametrize(
    "data",
    [
        {"status": "refining", "questions": []},
        {"status": "refining", "questions": [{"question": "Q?", "answers": ["only one"]}]},
        {"status": "complete", "finalPrompts": []},
        {"status": "maybe", "finalPrompts": ["P"]},
        {"finalPrompts": ["P"]},
        ["not", "an", "object"],
    ],
)
def test_validate_rejects_off_shape(data) -> None:
    assert validate(data) is None


def test_coerce_infers_refining_from_question_key() -> None:
    result = coerce({"question": {"text": "Who is the audience?", "options": ["Devs"]}})
    assert isinstance(result, RefiningResult)
    q = result.questions[0]
    assert q.question == "Who is the audience?"
    assert q.answers == ("Devs", FILLER_ANSWERS[0])
    assert q.allow_custom is True


def test_coerce_infers_complete_from_prompt_aliases() -> None:
    result = coerce({"final_prompts": "Only prompt", "suggested_approach": "detailed"})
    assert isinstance(result, CompleteResult)
    assert result.final_prompts == ("Only prompt",)
    assert result.suggested_approach == "detailed"
    assert result.confidence == 85


def test_coerce_result_key_and_clamped_confidence() -> None:
    result = coerce({"result": ["P1", "P2"], "confidence": 250})
    assert isinstance(result, CompleteResult)
    assert result.confidence == 100


def test_coerce_never_mixes_questions_and_prompts() -> None:
    result = coerce(
        {
            "status": "complete",
            "finalPrompts": ["P"],
            "questions": [{"question": "Q?", "answers": ["a", "b"]}],
        }
    )
    assert isinstance(result, CompleteResult)
    assert not hasattr(result, "questions")


def test_strip_code_fences() -> None:
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("plain") == "plain"


def test_extract_json_objects_respects_strings() -> None:
    text = 'Sure! {"status": "complete", "finalPrompts": ["use { and } freely"]} Thanks'
    candidates = extract_json_objects(text)
    assert json.loads(candidates[0])["finalPrompts"] == ["use { and } freely"]


def test_heuristic_question_mark_yields_one_question() -> None:
    result = heuristic_fallback("What kind of app do you want?")
    assert isinstance(result, RefiningResult)
    assert len(result.questions) == 1


def test_heuristic_plain_text_yields_two_placeholders() -> None:
    result = heuristic_fallback("Here is your prompt, enjoy", idea="a todo app")
    assert isinstance(result, CompleteResult)
    assert len(result.final_prompts) == 2
    assert result.confidence == 60
    assert all("a todo app" in p for p in result.final_prompts)


def test_heuristic_without_content_gives_up() -> None:
    assert heuristic_fallback("{}") is None


def test_pipeline_direct_stage(pipeline_with_buffer) -> None:
    pipeline, buffer = pipeline_with_buffer
    result, stage = pipeline.repair_with_stage('{"status":"complete","finalPrompts":["P"]}')
    assert stage == "direct"
    assert isinstance(result, CompleteResult)
    assert buffer.kinds() == ["parse_success"]


def test_pipeline_embedded_object_in_prose(pipeline_with_buffer) -> None:
    pipeline, buffer = pipeline_with_buffer
    raw = (
        "Here you go:\n```json\n"
        '{"status": "refining", "questions": [{"question": "Scope?", "answers": ["Small", "Large"]}]}'
        "\n```\nLet me know!"
    )
    result, stage = pipeline.repair_with_stage(raw)
    assert stage == "structural"
    assert isinstance(result, RefiningResult)
    assert buffer.kinds() == ["parse_error", "fallback_success"]


def test_pipeline_coerces_parsed_object(pipeline_with_buffer) -> None:
    pipeline, buffer = pipeline_with_buffer
    result, stage = pipeline.repair_with_stage('{"prompt": "Do the thing"}')
    assert stage == "structural"
    assert isinstance(result, CompleteResult)
    assert buffer.kinds() == ["validation_error", "validation_fallback_success"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("I have a question for you", RefiningResult),
        ("Is this for mobile?", RefiningResult),
        ("Totally free-form text", CompleteResult),
    ],
)
def test_pipeline_heuristic_stage(raw, expected) -> None:
    result, stage = ResponseRepairPipeline().repair_with_stage(raw, idea="idea")
    assert stage == "heuristic"
    assert isinstance(result, expected)


@pytest.mark.parametrize("raw", ["", "   ", None])
def test_pipeline_empty_response(raw) -> None:
    with pytest.raises(RefinementError) as exc:
        ResponseRepairPipeline().repair(raw)
    assert exc.value.kind is ErrorKind.EMPTY_RESPONSE


def test_pipeline_unparseable(pipeline_with_buffer) -> None:
    pipeline, buffer = pipeline_with_buffer
    with pytest.raises(RefinementError) as exc:
        pipeline.repair("{}")
    assert exc.value.kind is ErrorKind.UNPARSEABLE
    assert buffer.kinds()[-1] == "error"


def test_extract_json_objects_finds_nested_object_after_unclosed_brace() -> None:
    text = 'Note { this never closes. {"status": "complete", "finalPrompts": ["P"]}'
    assert extract_json_objects(text) == ['{"status": "complete", "finalPrompts": ["P"]}']


def test_extract_json_objects_ignores_quotes_in_prose() -> None:
    text = 'It is 5" wide: {"prompt": "Do it"}'
    assert extract_json_objects(text) == ['{"prompt": "Do it"}']


def test_pipeline_recovers_trailing_commas(pipeline_with_buffer) -> None:
    pipeline, buffer = pipeline_with_buffer
    raw = '{"status": "complete", "finalPrompts": ["Write pytest tests for the parser module",],}'
    result, stage = pipeline.repair_with_stage(raw, idea="parser tests")
    assert stage == "structural"
    assert isinstance(result, CompleteResult)
    assert result.final_prompts == ("Write pytest tests for the parser module",)
    assert result.confidence == 85
    assert buffer.kinds() == ["parse_error", "fallback_success"]


def test_pipeline_recovers_single_quoted_object() -> None:
    raw = (
        "{'status': 'refining', 'questions': "
        "[{'id': 'fw', 'question': 'Which framework?', 'answers': ['Django', 'Flask']}]}"
    )
    result, stage = ResponseRepairPipeline().repair_with_stage(raw)
    assert stage == "structural"
    assert isinstance(result, RefiningResult)
    assert result.questions[0].question == "Which framework?"
    assert result.questions[0].answers == ("Django", "Flask")


def test_pipeline_recovers_malformed_object_inside_prose() -> None:
    raw = 'Here it is: {"status": "complete", "finalPrompts": ["Build a CLI",]} Enjoy!'
    result, stage = ResponseRepairPipeline().repair_with_stage(raw)
    assert stage == "structural"
    assert isinstance(result, CompleteResult)
    assert result.final_prompts == ("Build a CLI",)


def test_pipeline_deeply_nested_text_falls_through_to_heuristic() -> None:
    result, stage = ResponseRepairPipeline().repair_with_stage("[" * 200000 + " What language?")
    assert stage == "heuristic"
    assert isinstance(result, RefiningResult)
    assert len(result.questions) == 1


def test_parse_direct_deeply_nested_text_returns_none() -> None:
    assert parse_direct("[" * 200000) is None


def test_pipeline_unclosed_braces_finish_quickly() -> None:
    started = time.perf_counter()
    result, stage = ResponseRepairPipeline().repair_with_stage(
        "Sure! " + "{" * 20000 + " here you go", idea="idea"
    )
    assert time.perf_counter() - started < 2.0
    assert stage == "heuristic"
    assert isinstance(result, CompleteResult)
