"""Shared fixtures: a scripted model client and a small registry of test tools."""

import json
from typing import (
    Annotated,
    Any,
    Callable,
    List,
    Optional,
    Sequence,
)

import pytest

from toolloop.agent.model_interface import BaseModelClient
from toolloop.core.schema import (
    CallRequest,
    CapabilitySchema,
    Role,
    Segment,
    Turn,
)
from toolloop.tools import (
    ToolParam,
    ToolRegistry,
    register_tool,
)
from toolloop.tools.path_guard import get_path_guard


# ---------------------------------------------------------------------------
# Model client double
# ---------------------------------------------------------------------------
class ScriptedClient(BaseModelClient):
    """Replays canned turns (or raises canned errors) and records every request."""

    def __init__(self, responses: Sequence[Any] = (), repeat: Optional[Turn] = None) -> None:
        self.responses = list(responses)
        self.repeat = repeat
        self.requests: List[List[Turn]] = []
        self.tools: List[List[CapabilitySchema]] = []
        self.on_generate: Optional[Callable[[], None]] = None

    async def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[CapabilitySchema],
        system_instruction: Optional[Turn] = None,
    ) -> Turn:
        self.requests.append(list(history))
        self.tools.append(list(tools))
        if self.on_generate is not None:
            self.on_generate()
        if self.responses:
            item = self.responses.pop(0)
        elif self.repeat is not None:
            item = self.repeat
        else:
            raise AssertionError("unexpected model round-trip")
        if isinstance(item, Exception):
            raise item
        return item


def calls_turn(*calls: CallRequest) -> Turn:
    """Model turn that requests *calls* in order."""
    return Turn(role=Role.MODEL, segments=[Segment(call_request=call) for call in calls])


def text_turn(*texts: str) -> Turn:
    return Turn(role=Role.MODEL, segments=[Segment(text=text) for text in texts])


# ---------------------------------------------------------------------------
# Test tools
# ---------------------------------------------------------------------------
executed: List[str] = []


@register_tool("Creates a game object in the scene.")
def create_game_object(
    game_object_name: Annotated[str, ToolParam("Name of the new object.")],
    parent_name: Annotated[Optional[str], ToolParam("Optional parent object.")] = None,
) -> str:
    executed.append(f"create_game_object:{game_object_name}")
    return json.dumps(
        {
            "status": "success",
            "message": f"Created '{game_object_name}' under {parent_name or 'the scene root'}.",
            "requires_reload": True,
        }
    )


@register_tool("Echoes its input.")
def echo(text: str) -> str:
    executed.append(f"echo:{text}")
    return json.dumps({"status": "success", "result": text})


@register_tool("Always fails.")
def explode() -> str:
    raise RuntimeError("kaboom")


@pytest.fixture
def registry() -> ToolRegistry:
    executed.clear()
    return ToolRegistry.from_functions([create_game_object, echo, explode])


@pytest.fixture
def executed_calls() -> List[str]:
    return executed


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point the workspace tools at a temporary directory with a protected ``secrets`` folder."""
    from toolloop.config import settings  # pylint: disable=import-outside-toplevel

    monkeypatch.setattr(settings, "WORKSPACE_ROOT", str(tmp_path))
    monkeypatch.setattr(settings, "PROTECTED_DIRECTORIES", ["secrets", ".git"])
    get_path_guard.cache_clear()
    yield tmp_path
    get_path_guard.cache_clear()
