"""
Core API backend for toolloop.

This module exposes the agent loop through a RESTful API that's used by frontends.
It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **GET /tools**   - capability schemas of every registered tool.
- **POST /sessions** - create a new session, returns a session ID.
- **GET /sessions** - list known sessions.
- **POST /agent**   - run one user message: {"message": "...", "session_id": "..."}
- **GET /sessions/{id}/history** - full transcript.
- **POST /sessions/{id}/stop** - cooperative stop of a running turn.
- **POST /sessions/{id}/reset** - clear a conversation.

Each session is one :class:`AgentLoop` whose state lives in ``DATA_DIR/conversations``.
Conversations interrupted by a restart are resumed when the app starts.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import (
    AsyncIterator,
    Dict,
    List,
    Optional,
    Set,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
)

from toolloop.agent.agent_loop import AgentLoop
from toolloop.agent.model_interface import (
    BaseModelClient,
    load_client,
    load_system_instruction,
)
from toolloop.api.models import (
    HistoryResponse,
    MessageRequest,
    MessageResponse,
    SessionResponse,
)
from toolloop.common import (
    AnsiColors,
    colored_print,
)
from toolloop.config import settings
from toolloop.core.errors import ConversationBusy
from toolloop.core.schema import (
    CapabilitySchema,
    Role,
)
from toolloop.memory.state_store import StateStore
from toolloop.tools import get_registry
from toolloop.tools.path_guard import get_path_guard

logger = logging.getLogger(__name__)

# Live conversations, keyed by session ID
conversations: Dict[str, AgentLoop] = {}
_background_tasks: Set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_model_client() -> BaseModelClient:
    """Process-wide model client (overridable through ``app.dependency_overrides``)."""
    return load_client()


def _conversation_dir() -> Path:
    return Path(settings.DATA_DIR) / "conversations"


def _refresh_workspace() -> None:
    """Host sync handler: tools changed files, so drop cached workspace state."""
    logger.info("Refreshing workspace state after file changes")
    get_path_guard.cache_clear()


def open_conversation(session_id: str, client: BaseModelClient) -> AgentLoop:
    """Return the live loop for *session_id*, restoring it from disk on first access."""
    loop = conversations.get(session_id)
    if loop is None:
        store = StateStore(_conversation_dir() / f"{session_id}.json")
        loop = AgentLoop.restore(
            client,
            store,
            registry=get_registry(),
            system_instruction=load_system_instruction(),
            host_sync=_refresh_workspace,
        )
        conversations[session_id] = loop
    return loop


def session_exists(session_id: str) -> bool:
    return session_id in conversations or (_conversation_dir() / f"{session_id}.json").exists()


def get_or_create_session(session_id: Optional[str] = None) -> str:
    """Get existing session or create a new one."""
    if session_id and session_exists(session_id):
        return session_id
    return str(uuid.uuid4())


def _require_session(session_id: str, client: BaseModelClient) -> AgentLoop:
    if not session_exists(session_id):
        raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
    return open_conversation(session_id, client)


def _session_info(session_id: str, loop: AgentLoop) -> SessionResponse:
    return SessionResponse(
        session_id=session_id,
        is_processing=loop.state.is_processing,
        iteration_count=loop.state.iteration_count,
        turns=len(loop.state.history),
    )


def _resume_in_background(session_id: str, loop: AgentLoop) -> None:
    async def _resume() -> None:
        outcome = await loop.resume()
        logger.info("Resumed session %s: %s", session_id, outcome.value if outcome else "idle")

    task = asyncio.get_running_loop().create_task(_resume())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Restore persisted conversations and resume the interrupted ones."""
    directory = _conversation_dir()
    if directory.is_dir():
        factory = application.dependency_overrides.get(get_model_client, get_model_client)
        client = factory()
        for path in sorted(directory.glob("*.json")):
            loop = open_conversation(path.stem, client)
            if loop.needs_resume:
                logger.info("Session %s was interrupted; resuming", path.stem)
                _resume_in_background(path.stem, loop)
    yield
    for loop in conversations.values():
        if loop.is_running:
            loop.stop()


app = FastAPI(
    title="toolloop API",
    version="0.1.0",
    description="Agentic tool-calling loop API",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.get("/tools", response_model=List[CapabilitySchema], summary="List tools")
async def list_tools() -> List[CapabilitySchema]:
    """Capability schemas sent to the model."""
    return get_registry().discover()


@app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
async def create_session(client: BaseModelClient = Depends(get_model_client)) -> SessionResponse:
    """Create a new conversation session."""
    session_id = get_or_create_session()
    loop = open_conversation(session_id, client)
    loop.reset()
    return _session_info(session_id, loop)


@app.get("/sessions", response_model=List[SessionResponse], summary="List sessions")
async def list_sessions(
    client: BaseModelClient = Depends(get_model_client),
) -> List[SessionResponse]:
    """List live and persisted sessions."""
    known = set(conversations)
    if _conversation_dir().is_dir():
        known.update(path.stem for path in _conversation_dir().glob("*.json"))
    return [_session_info(sid, open_conversation(sid, client)) for sid in sorted(known)]


@app.post("/agent", response_model=MessageResponse, summary="Process a message")
async def agent_endpoint(
    req: MessageRequest, client: BaseModelClient = Depends(get_model_client)
) -> MessageResponse:
    """Run one user message through the agent loop and return the new turns."""
    session_id = get_or_create_session(req.session_id)
    loop = open_conversation(session_id, client)
    start = len(loop.state.history)

    try:
        outcome = await loop.send(req.message)
    except ConversationBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    new_turns = loop.state.history[start:]
    model_turns = [turn for turn in new_turns if turn.role is Role.MODEL and turn.text]
    reply = model_turns[-1].text if model_turns else ""
    return MessageResponse(
        session_id=session_id, outcome=outcome.value, reply=reply, turns=new_turns
    )


@app.get(
    "/sessions/{session_id}/history", response_model=HistoryResponse, summary="Transcript"
)
async def session_history(
    session_id: str, client: BaseModelClient = Depends(get_model_client)
) -> HistoryResponse:
    """Return the full conversation history."""
    loop = _require_session(session_id, client)
    return HistoryResponse(
        session_id=session_id,
        is_processing=loop.state.is_processing,
        iteration_count=loop.state.iteration_count,
        history=loop.state.history,
    )


@app.post("/sessions/{session_id}/stop", response_model=SessionResponse, summary="Stop")
async def stop_session(
    session_id: str, client: BaseModelClient = Depends(get_model_client)
) -> SessionResponse:
    """Suppress the next model round-trip of a running conversation."""
    loop = _require_session(session_id, client)
    loop.stop()
    return _session_info(session_id, loop)


@app.post("/sessions/{session_id}/reset", response_model=SessionResponse, summary="Reset")
async def reset_session(
    session_id: str, client: BaseModelClient = Depends(get_model_client)
) -> SessionResponse:
    """Clear the conversation."""
    loop = _require_session(session_id, client)
    try:
        loop.reset()
    except ConversationBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _session_info(session_id, loop)


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting toolloop API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump(exclude={"GEMINI_API_KEY"}))

    colored_print(f"toolloop API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "toolloop.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m toolloop.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
