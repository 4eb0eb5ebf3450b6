"""
Schema definitions for model <-> agent loop <-> tool messages.

These data models serve as the contract between the remote model, the orchestration loop, the
state store, and individual tools.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    RootModel,
    model_validator,
)


class Role(str, Enum):
    """Author of a turn.  ``SYSTEM`` is only used for the system instruction, never in history."""

    USER = "user"
    MODEL = "model"
    TOOL = "tool"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Conversation content
# ---------------------------------------------------------------------------
class CallRequest(BaseModel):
    """A call that the model wants the agent to execute."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="External (snake_case) tool name")
    args: JsonValue = Field(default_factory=dict, description="Untyped argument tree")


class CallResult(BaseModel):
    """Structured outcome of a call, fed back to the model."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Name of the originating CallRequest")
    payload: JsonValue = None
    requires_host_sync: bool = False


class Segment(BaseModel):
    """One unit within a turn: exactly one of text, call request or call result."""

    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    call_request: Optional[CallRequest] = None
    call_result: Optional[CallResult] = None

    @model_validator(mode="after")
    def _exactly_one_variant(self) -> "Segment":
        populated = [
            value
            for value in (self.text, self.call_request, self.call_result)
            if value is not None
        ]
        if len(populated) != 1:
            raise ValueError("a segment must carry exactly one of text, call_request, call_result")
        return self


class Turn(BaseModel):
    """A single message in the conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    segments: List[Segment] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Turn":
        """Build a user turn holding *text*."""
        return cls(role=Role.USER, segments=[Segment(text=text)])

    @classmethod
    def reply(cls, text: str) -> "Turn":
        """Build a model turn holding *text* (used for synthetic error turns)."""
        return cls(role=Role.MODEL, segments=[Segment(text=text)])

    @classmethod
    def tool(cls, results: List[CallResult]) -> "Turn":
        """Build a tool turn from call results, keeping their order."""
        return cls(role=Role.TOOL, segments=[Segment(call_result=result) for result in results])

    @property
    def call_requests(self) -> List[CallRequest]:
        """Call requests in response order."""
        return [seg.call_request for seg in self.segments if seg.call_request is not None]

    @property
    def call_results(self) -> List[CallResult]:
        return [seg.call_result for seg in self.segments if seg.call_result is not None]

    @property
    def trailing_text(self) -> Optional[str]:
        """Text of the last segment, or *None* if the turn does not end with text."""
        if not self.segments:
            return None
        return self.segments[-1].text

    @property
    def text(self) -> str:
        return "".join(seg.text for seg in self.segments if seg.text)


# ---------------------------------------------------------------------------
# Loop state
# ---------------------------------------------------------------------------
class PendingCallStack(RootModel[List[CallRequest]]):
    """
    Last-in-first-out collection of calls awaiting execution.

    ``root`` is stored bottom to top, so the last element is popped first.
    """

    root: List[CallRequest] = Field(default_factory=list)

    def push(self, call: CallRequest) -> None:
        self.root.append(call)

    def pop(self) -> CallRequest:
        if not self.root:
            raise IndexError("pop from an empty call stack")
        return self.root.pop()

    def clear(self) -> None:
        self.root.clear()

    def __iter__(self) -> Iterator[CallRequest]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __bool__(self) -> bool:
        return bool(self.root)


class LoopState(BaseModel):
    """Everything needed to resume a conversation after a restart."""

    history: List[Turn] = Field(default_factory=list)
    pending_calls: PendingCallStack = Field(default_factory=PendingCallStack)
    user_input_draft: str = ""
    is_processing: bool = False
    iteration_count: int = 0
    ui_state: Dict[str, JsonValue] = Field(
        default_factory=dict, description="Opaque presentation fields passed through untouched"
    )


# ---------------------------------------------------------------------------
# Capability schema
# ---------------------------------------------------------------------------
class ParamKind(str, Enum):
    """Primitive kinds a tool parameter can take."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"


class ParameterSchema(BaseModel):
    """Machine-readable description of one tool parameter."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: ParamKind = ParamKind.STRING
    item_kind: Optional[ParamKind] = None
    description: str = ""
    required: bool = True


class CapabilitySchema(BaseModel):
    """Machine-readable description of one tool, as exposed to the model."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: List[ParameterSchema] = Field(default_factory=list)

    def as_json_schema(self) -> Dict[str, Any]:
        """Return the parameters as a JSON-schema ``object`` definition."""
        properties: Dict[str, Any] = {}
        for param in self.parameters:
            prop: Dict[str, Any] = {"type": param.kind.value, "description": param.description}
            if param.kind is ParamKind.ARRAY:
                prop["items"] = {"type": (param.item_kind or ParamKind.STRING).value}
            properties[param.name] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": [param.name for param in self.parameters if param.required],
        }
