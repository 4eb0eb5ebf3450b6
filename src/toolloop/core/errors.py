"""
Error taxonomy shared by the registry, dispatcher, agent loop and state store.

Capability errors (``ToolExecutionError`` and its subclasses) are converted into structured
tool results by the dispatcher.  Model errors end the current turn at the agent-loop boundary.
``StateCorrupt`` is absorbed by the state store and degrades to an empty conversation.
"""


class ToolloopError(Exception):
    """Base class for every error raised by toolloop."""


# ---------------------------------------------------------------------------
# Capability execution
# ---------------------------------------------------------------------------
class ToolExecutionError(ToolloopError):
    """Raised when a requested tool cannot run or fails."""

    kind = "tool_execution_error"


class ToolNotFound(ToolExecutionError):
    """No registered tool matches the requested name."""

    kind = "tool_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"Function '{name}' is not defined.")
        self.name = name


class MissingArgument(ToolExecutionError):
    """A required parameter has no matching key and no default."""

    kind = "missing_argument"

    def __init__(self, name: str) -> None:
        super().__init__(f"Missing required argument: {name}")
        self.name = name


class ArgumentCoercionFailure(ToolExecutionError):
    """An argument value cannot be converted to the parameter's type."""

    kind = "argument_coercion_failure"


class CapabilityExecutionFault(ToolExecutionError):
    """The tool callable itself failed."""

    kind = "capability_execution_fault"


class DuplicateToolError(ValueError):
    """Two tools map to the same external name."""


class PathAccessDenied(ToolloopError):
    """A tool tried to touch a path outside the workspace or under a protected prefix."""


# ---------------------------------------------------------------------------
# Model round-trips
# ---------------------------------------------------------------------------
class ModelError(ToolloopError):
    """Base class for failures talking to the remote model."""


class ModelTransportFailure(ModelError):
    """The request to the model failed (network, HTTP status, timeout)."""


class MalformedModelResponse(ModelError):
    """The model answered, but the first candidate carried no usable content."""


# ---------------------------------------------------------------------------
# Conversation lifecycle
# ---------------------------------------------------------------------------
class StateCorrupt(ToolloopError):
    """The persisted conversation state cannot be read."""


class ConversationBusy(ToolloopError):
    """A message was sent while the conversation is still processing."""
