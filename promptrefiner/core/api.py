import uuid
from typing import Any, cast

from fastapi import FastAPI, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field
from starlette.middleware.cors import CORSMiddleware

from promptrefiner.agents.errors import InvalidTransitionError
from promptrefiner.agents.orchestrator import RefinementOrchestrator
from promptrefiner.agents.stacks import available_stacks, get_contextual_questions
from promptrefiner.agents.types import (
    COMPLEXITIES,
    OUTPUT_FORMATS,
    OUTPUT_STYLES,
    AnswerSubmission,
)
from promptrefiner.core.session_manager import SessionManager, SessionPreferences
from promptrefiner.core.storage.history import SqlHistoryStore
from promptrefiner.utils.credentials import FileCredentialStore
from promptrefiner.utils.env_cfg import load_host_env, load_telemetry_env
from promptrefiner.utils.openai_cfg import OpenAITransport
from promptrefiner.utils.telemetry import InMemoryTelemetry, Telemetry

# Load allowed origins from environment or default to the dev frontend ports
allowed_origins = load_host_env().cors_allowed_origins.split(",")

app = FastAPI(title="Prompt Refiner")
app.add_middleware(
    middleware_class=cast(Any, CORSMiddleware),
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_telemetry_cfg = load_telemetry_env()
telemetry_buffer = InMemoryTelemetry(max_events=_telemetry_cfg.buffer_size)
telemetry = Telemetry(sink=telemetry_buffer, enabled=_telemetry_cfg.enabled)
transport = OpenAITransport()
credentials = FileCredentialStore()
store = SqlHistoryStore()
sessions: dict[str, SessionManager] = {}


def _new_session(preferences: SessionPreferences) -> SessionManager:
    orchestrator = RefinementOrchestrator(
        transport=transport, credentials=credentials, telemetry=telemetry
    )
    return SessionManager(orchestrator=orchestrator, store=store, preferences=preferences)


def _get_session(session_id: str) -> SessionManager:
    manager = sessions.get(session_id)
    if manager is None:
        logger.error("HTTPException: Session {} not found", session_id)
        raise HTTPException(status_code=404, detail="Session not found")
    return manager


# --- Pydantic models for request and response payloads ---


class SessionIn(BaseModel):
    stacks: list[str] = []
    max_rounds: int = Field(default=5, gt=0, le=20)
    complexity: str = "detailed"
    output_style: str = "professional"
    output_format: str = "Markdown"


class StartIn(BaseModel):
    idea: str


class AnswerIn(BaseModel):
    question_id: str
    answer: str = ""


class AnswersIn(BaseModel):
    answers: list[AnswerIn]


class SessionOut(BaseModel):
    session_id: str
    snapshot: dict[str, Any]


class HistoryOut(BaseModel):
    items: list[dict[str, Any]]


class CredentialIn(BaseModel):
    api_key: str


class CredentialStatusOut(BaseModel):
    configured: bool


# --- API Endpoints ---


@app.get("/stacks", response_model=list[str], tags=["Options"])
def stacks_list() -> list[str]:
    return available_stacks()


@app.get("/stacks/questions", tags=["Options"])
def stacks_questions(stacks: list[str] = Query(default=[])) -> list[dict[str, Any]]:
    """
    Catalog questions for a stack selection, ordered by their dependencies.

    Args:
        stacks (list[str]): Selected technology tags.

    Returns:
        list[dict[str, Any]]: The questions as dictionaries.
    """
    return [q.to_dict() for q in get_contextual_questions(stacks)]


@app.post("/sessions", response_model=SessionOut, tags=["Sessions"])
def create_session(payload: SessionIn) -> dict[str, Any]:
    """
    Create a new idle session with the given preferences.

    Args:
        payload (SessionIn): Session preferences.

    Returns:
        dict[str, Any]: The session id and its snapshot.

    Raises:
        HTTPException: If a preference value is not supported.
    """
    for name, value, allowed in (
        ("complexity", payload.complexity, COMPLEXITIES),
        ("output_style", payload.output_style, OUTPUT_STYLES),
        ("output_format", payload.output_format, OUTPUT_FORMATS),
    ):
        if value not in allowed:
            logger.error("HTTPException: Unsupported {} '{}'", name, value)
            raise HTTPException(status_code=400, detail=f"Unsupported {name}: {value}")

    preferences = SessionPreferences(
        stacks=frozenset(payload.stacks),
        max_rounds=payload.max_rounds,
        complexity=payload.complexity,
        output_style=payload.output_style,
        output_format=payload.output_format,
    )
    session_id = str(uuid.uuid4())
    manager = _new_session(preferences)
    sessions[session_id] = manager
    logger.info("Created session {}", session_id)
    return {"session_id": session_id, "snapshot": manager.snapshot().to_dict()}


@app.get("/sessions/{session_id}", response_model=SessionOut, tags=["Sessions"])
def get_session(session_id: str) -> dict[str, Any]:
    manager = _get_session(session_id)
    return {"session_id": session_id, "snapshot": manager.snapshot().to_dict()}


@app.delete("/sessions/{session_id}", tags=["Sessions"])
def delete_session(session_id: str) -> dict[str, bool]:
    _get_session(session_id)
    del sessions[session_id]
    return {"ok": True}


@app.post("/sessions/{session_id}/start", response_model=SessionOut, tags=["Sessions"])
async def start_session(session_id: str, payload: StartIn) -> dict[str, Any]:
    """
    Start refining an idea in a session.

    Args:
        session_id (str): The session id.
        payload (StartIn): The idea.

    Returns:
        dict[str, Any]: The session id and its snapshot after the request settled.

    Raises:
        HTTPException: 404 for unknown sessions, 409 if not idle, 400 for a blank idea.
    """
    manager = _get_session(session_id)
    try:
        snap = await manager.start(payload.idea)
    except InvalidTransitionError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=400, detail=str(e))
    return {"session_id": session_id, "snapshot": snap.to_dict()}


@app.post("/sessions/{session_id}/resume", response_model=SessionOut, tags=["Sessions"])
async def resume_session(session_id: str) -> dict[str, Any]:
    manager = _get_session(session_id)
    try:
        snap = await manager.resume_pending()
    except InvalidTransitionError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=400, detail=str(e))
    return {"session_id": session_id, "snapshot": snap.to_dict()}


@app.post("/sessions/{session_id}/answers", response_model=SessionOut, tags=["Sessions"])
async def submit_answers(session_id: str, payload: AnswersIn) -> dict[str, Any]:
    """
    Submit answers for the current question batch.

    Args:
        session_id (str): The session id.
        payload (AnswersIn): One answer per question id.

    Returns:
        dict[str, Any]: The session id and its snapshot after the request settled.

    Raises:
        HTTPException: 404 for unknown sessions, 409 if no batch is pending, 400 for invalid answers.
    """
    manager = _get_session(session_id)
    answers = [AnswerSubmission(a.question_id, a.answer) for a in payload.answers]
    try:
        snap = await manager.submit(answers)
    except InvalidTransitionError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=400, detail=str(e))
    return {"session_id": session_id, "snapshot": snap.to_dict()}


@app.post(
    "/sessions/{session_id}/acknowledge", response_model=SessionOut, tags=["Sessions"]
)
def acknowledge_session(session_id: str) -> dict[str, Any]:
    manager = _get_session(session_id)
    try:
        snap = manager.acknowledge()
    except InvalidTransitionError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=409, detail=str(e))
    return {"session_id": session_id, "snapshot": snap.to_dict()}


@app.get("/history", response_model=HistoryOut, tags=["History"])
def history_list() -> dict[str, list[dict[str, Any]]]:
    return {"items": [item.to_dict() for item in store.load_history()]}


@app.get("/history/{item_id}", tags=["History"])
def history_item(item_id: str) -> dict[str, Any]:
    for item in store.load_history():
        if item.id == item_id:
            return item.to_dict()
    logger.error("HTTPException: History item {} not found", item_id)
    raise HTTPException(status_code=404, detail="History item not found")


@app.delete("/history/{item_id}", tags=["History"])
def history_delete(item_id: str) -> dict[str, bool]:
    items = store.load_history()
    remaining = [item for item in items if item.id != item_id]
    if len(remaining) == len(items):
        logger.error("HTTPException: History item {} not found", item_id)
        raise HTTPException(status_code=404, detail="History item not found")
    store.save_history(remaining)
    return {"ok": True}


@app.delete("/history", tags=["History"])
def history_clear() -> dict[str, bool]:
    store.save_history([])
    return {"ok": True}


@app.get("/credentials", response_model=CredentialStatusOut, tags=["Credentials"])
def credential_status() -> dict[str, bool]:
    return {"configured": credentials.has_credential()}


@app.put("/credentials", response_model=CredentialStatusOut, tags=["Credentials"])
def credential_save(payload: CredentialIn) -> dict[str, bool]:
    try:
        credentials.save(payload.api_key)
    except ValueError as e:
        logger.error("HTTPException: {}", e)
        raise HTTPException(status_code=400, detail=str(e))
    return {"configured": True}


@app.delete("/credentials", response_model=CredentialStatusOut, tags=["Credentials"])
def credential_remove() -> dict[str, bool]:
    credentials.remove()
    return {"configured": credentials.has_credential()}


@app.get("/telemetry", tags=["Telemetry"])
def telemetry_events() -> dict[str, Any]:
    return {
        "enabled": telemetry.enabled,
        "events": [
            {"timestamp": e.timestamp, "kind": e.kind, "payload": e.payload}
            for e in telemetry_buffer.events
        ],
    }


def serve() -> None:
    """
    Run the API with uvicorn on the configured backend host.
    """
    import uvicorn
    from urllib.parse import urlparse

    host = urlparse(load_host_env().backend_host)
    uvicorn.run(app, host=host.hostname or "127.0.0.1", port=host.port or 8000)


if __name__ == "__main__":
    serve()
