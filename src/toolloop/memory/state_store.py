"""
Persist the agent loop's state to a JSON file so a conversation survives a restart.

Argument and payload trees are stored as serialized JSON *text* (``args_json``,
``response_json``) rather than as nested objects, so the on-disk format does not depend on how
tools type their arguments.  The pending-call stack is stored bottom to top.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import (
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
    JsonValue,
    ValidationError,
)

from toolloop.core.errors import StateCorrupt
from toolloop.core.schema import (
    CallRequest,
    CallResult,
    LoopState,
    PendingCallStack,
    Role,
    Segment,
    Turn,
)

logger = logging.getLogger(__name__)

STATE_VERSION = 1


# ---------------------------------------------------------------------------
# On-disk schema
# ---------------------------------------------------------------------------
class StoredFunctionCall(BaseModel):
    name: str
    args_json: str


class StoredFunctionResponse(BaseModel):
    name: str
    response_json: str
    requires_host_sync: bool = False


class StoredPart(BaseModel):
    text: Optional[str] = None
    function_call: Optional[StoredFunctionCall] = None
    function_response: Optional[StoredFunctionResponse] = None


class StoredContent(BaseModel):
    role: Role
    parts: List[StoredPart] = Field(default_factory=list)


class ChatState(BaseModel):
    """Serializable mirror of :class:`~toolloop.core.schema.LoopState`."""

    version: int = STATE_VERSION
    history: List[StoredContent] = Field(default_factory=list)
    user_input: str = ""
    pending_calls: List[StoredFunctionCall] = Field(default_factory=list)
    is_processing: bool = False
    looped: int = 0
    ui_state: Dict[str, JsonValue] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------
def _dump_call(call: CallRequest) -> StoredFunctionCall:
    return StoredFunctionCall(name=call.name, args_json=json.dumps(call.args, ensure_ascii=False))


def _load_call(stored: StoredFunctionCall) -> CallRequest:
    return CallRequest(name=stored.name, args=json.loads(stored.args_json))


def _dump_segment(segment: Segment) -> StoredPart:
    if segment.call_request is not None:
        return StoredPart(function_call=_dump_call(segment.call_request))
    if segment.call_result is not None:
        result = segment.call_result
        return StoredPart(
            function_response=StoredFunctionResponse(
                name=result.name,
                response_json=json.dumps(result.payload, ensure_ascii=False),
                requires_host_sync=result.requires_host_sync,
            )
        )
    return StoredPart(text=segment.text)


def _load_segment(part: StoredPart) -> Segment:
    if part.function_call is not None:
        return Segment(call_request=_load_call(part.function_call))
    if part.function_response is not None:
        response = part.function_response
        return Segment(
            call_result=CallResult(
                name=response.name,
                payload=json.loads(response.response_json),
                requires_host_sync=response.requires_host_sync,
            )
        )
    return Segment(text=part.text)


def dump_state(state: LoopState) -> ChatState:
    """Convert a live loop state into its serializable form."""
    return ChatState(
        history=[
            StoredContent(role=turn.role, parts=[_dump_segment(s) for s in turn.segments])
            for turn in state.history
        ],
        user_input=state.user_input_draft,
        pending_calls=[_dump_call(call) for call in state.pending_calls],
        is_processing=state.is_processing,
        looped=state.iteration_count,
        ui_state=dict(state.ui_state),
    )


def restore_state(chat: ChatState) -> LoopState:
    """
    Rebuild a loop state from its serializable form.

    Raises
    ------
    StateCorrupt
        If an embedded argument or payload tree is not valid JSON, or a part is empty.
    """
    try:
        history = [
            Turn(role=content.role, segments=[_load_segment(p) for p in content.parts])
            for content in chat.history
        ]
        pending = PendingCallStack([_load_call(call) for call in chat.pending_calls])
    except (ValueError, ValidationError) as exc:
        raise StateCorrupt(f"Invalid conversation content: {exc}") from exc
    return LoopState(
        history=history,
        pending_calls=pending,
        user_input_draft=chat.user_input,
        is_processing=chat.is_processing,
        iteration_count=chat.looped,
        ui_state=chat.ui_state,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class StateStore:
    """JSON-file persistence for one conversation."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def save(self, state: LoopState) -> None:
        """
        Write *state* to disk.

        The document is written to a temporary file in the same directory and then moved into
        place, so a crash mid-write leaves the previous state intact.
        """
        document = dump_state(state).model_dump_json(indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read(self) -> Optional[LoopState]:
        """
        Read the stored state; *None* if nothing has been stored yet.

        Raises
        ------
        StateCorrupt
            If the file exists but cannot be parsed.
        """
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StateCorrupt(f"Cannot read {self.path}: {exc}") from exc
        if not raw.strip():
            return None
        try:
            chat = ChatState.model_validate_json(raw)
        except ValidationError as exc:
            raise StateCorrupt(f"Cannot parse {self.path}: {exc}") from exc
        return restore_state(chat)

    def load(self) -> Optional[LoopState]:
        """Like :meth:`read`, but a corrupt file is logged and treated as absent."""
        try:
            return self.read()
        except StateCorrupt as exc:
            logger.warning("Could not restore chat state. It might be corrupted. %s", exc)
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
