import asyncio
import json
from pathlib import Path
from time import time
from typing import Callable

from dotenv import load_dotenv
from loguru import logger

from promptrefiner.agents.orchestrator import RefinementOrchestrator
from promptrefiner.agents.stacks import available_stacks
from promptrefiner.agents.types import AnswerSubmission, RefinementQuestion, SessionState
from promptrefiner.core.session_manager import SessionManager, SessionPreferences
from promptrefiner.core.storage.history import SqlHistoryStore
from promptrefiner.utils.credentials import FileCredentialStore
from promptrefiner.utils.env_cfg import load_path_env, load_telemetry_env
from promptrefiner.utils.logging_cfg import setup_logging
from promptrefiner.utils.openai_cfg import OpenAITransport
from promptrefiner.utils.telemetry import LoguruTelemetry, Telemetry

InputFn = Callable[[str], str]


def _get_idea(input_fn: InputFn = input) -> str:
    """
    Prompts the user to describe their idea.

    Args:
        input_fn (InputFn, optional): Reads one line. Defaults to input.

    Returns:
        str: The entered idea.
    """
    return input_fn("Describe your idea: ").strip()


def _get_stacks(input_fn: InputFn = input) -> frozenset[str]:
    """
    Prompts for a comma-separated list of technologies; unknown names are ignored.

    Args:
        input_fn (InputFn, optional): Reads one line. Defaults to input.

    Returns:
        frozenset[str]: The known technologies selected.
    """
    known = {s.lower(): s for s in available_stacks()}
    raw = input_fn(f"Technologies (comma-separated, optional) [{', '.join(known.values())}]: ")
    selected = set()
    for name in raw.split(","):
        key = name.strip().lower()
        if not key:
            continue
        if key in known:
            selected.add(known[key])
        else:
            logger.warning("Ignoring unknown technology '{}'", name.strip())
    return frozenset(selected)


def _ask_credential(store: FileCredentialStore, input_fn: InputFn = input) -> bool:
    key = input_fn("No API key configured. Enter your API key (leave empty to quit): ").strip()
    if not key:
        return False
    store.save(key)
    return True


def ask_question(question: RefinementQuestion, input_fn: InputFn = input) -> str:
    """
    Shows one question with numbered suggestions and reads the answer.

    A number picks a suggestion; any other text is a custom answer when allowed.

    Args:
        question (RefinementQuestion): The question to ask.
        input_fn (InputFn, optional): Reads one line. Defaults to input.

    Returns:
        str: The answer, or an empty string when skipped.
    """
    marker = " (required)" if question.required else ""
    print(f"\n[{question.kind.value}] {question.question}{marker}")
    for idx, answer in enumerate(question.answers, start=1):
        print(f"  {idx}. {answer}")
    while True:
        raw = input_fn("Your answer: ").strip()
        if raw.isdigit() and 1 <= int(raw) <= len(question.answers):
            return question.answers[int(raw) - 1]
        if not raw and not question.required:
            return ""
        if raw and question.allow_custom:
            return raw
        print("Please pick one of the numbered answers.")


def _store_output(data: dict, output_path: Path) -> Path:
    output_path.mkdir(parents=True, exist_ok=True)
    target = output_path / f"{int(time())}_prompts.json"
    with open(target, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    logger.info("Results stored in {}", target)
    return target


async def run_session(manager: SessionManager, idea: str, input_fn: InputFn = input) -> None:
    """
    Drives one session from idea to final prompts or error.

    Args:
        manager (SessionManager): The session to drive.
        idea (str): The user's idea.
        input_fn (InputFn, optional): Reads one line. Defaults to input.
    """
    snap = await manager.start(idea)
    while snap.state is SessionState.REFINING:
        print(f"\n--- Round {snap.round} ---")
        answers = [
            AnswerSubmission(q.id, ask_question(q, input_fn)) for q in snap.questions
        ]
        snap = await manager.submit(answers)

    if snap.state is SessionState.FINAL and snap.final is not None:
        print(f"\nConfidence: {snap.final.confidence}% ({snap.final.suggested_approach})")
        for idx, prompt in enumerate(snap.final.final_prompts, start=1):
            print(f"\n=== Prompt {idx} ===\n{prompt}")
        for step in snap.final.next_steps:
            print(f"- {step}")
        _store_output(snap.to_dict(), load_path_env().data / "outputs")
    elif snap.state is SessionState.ERROR and snap.error is not None:
        print(f"\nError: {snap.error.message}")
    if snap.state in (SessionState.FINAL, SessionState.ERROR):
        manager.acknowledge()


def main() -> None:
    """
    Main entry point for the CLI. Reads an idea, asks the model's questions and prints the final prompts.
    """
    load_dotenv()
    setup_logging(console=False)

    credentials = FileCredentialStore()
    telemetry = Telemetry(sink=LoguruTelemetry(), enabled=load_telemetry_env().enabled)
    orchestrator = RefinementOrchestrator(
        transport=OpenAITransport(), credentials=credentials, telemetry=telemetry
    )
    manager = SessionManager(
        orchestrator=orchestrator,
        store=SqlHistoryStore(),
        preferences=SessionPreferences.from_env(),
    )

    idea = _get_idea()
    if not idea:
        print("Nothing to refine.")
        return
    stacks = _get_stacks()
    if stacks:
        prefs = manager.preferences
        prefs.stacks = stacks
        manager.set_preferences(prefs)

    if not manager.has_credential() and not _ask_credential(credentials):
        return

    try:
        asyncio.run(run_session(manager, idea))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
