"""
Tests for conversation state persistence.

Run with:
$ pytest -q
"""

import json
import logging

import pytest

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
from toolloop.memory.state_store import StateStore


def _sample_state() -> LoopState:
    args = {"game_object_name": "Cube", "position": [1, 2.5, -3], "meta": {"tags": None}}
    return LoopState(
        history=[
            Turn.user("Add a cube"),
            Turn(
                role=Role.MODEL,
                segments=[
                    Segment(text="Sure."),
                    Segment(call_request=CallRequest(name="create_game_object", args=args)),
                ],
            ),
            Turn.tool(
                [
                    CallResult(
                        name="create_game_object",
                        payload={"status": "success", "requires_reload": True},
                        requires_host_sync=True,
                    )
                ]
            ),
        ],
        pending_calls=PendingCallStack(
            [
                CallRequest(name="a", args={}),
                CallRequest(name="b", args={"n": 1}),
                CallRequest(name="c", args=[1, "two"]),
            ]
        ),
        user_input_draft="half-typed",
        is_processing=True,
        iteration_count=2,
        ui_state={"scroll": {"x": 0.0, "y": 12.5}},
    )


def test_round_trip(tmp_path) -> None:
    """Saving then loading yields an equal state."""

    store = StateStore(tmp_path / "state.json")
    state = _sample_state()

    store.save(state)

    assert store.load() == state


def test_pending_stack_keeps_lifo_order(tmp_path) -> None:
    """The top of the stack before saving is still the top after loading."""

    store = StateStore(tmp_path / "state.json")
    store.save(_sample_state())

    pending = store.load().pending_calls

    assert [pending.pop().name for _ in range(3)] == ["c", "b", "a"]


def test_argument_trees_stored_as_text(tmp_path) -> None:
    """Argument and payload trees are embedded as serialized JSON strings."""

    path = tmp_path / "state.json"
    StateStore(path).save(_sample_state())

    document = json.loads(path.read_text(encoding="utf-8"))

    call = document["history"][1]["parts"][1]["function_call"]
    assert isinstance(call["args_json"], str)
    assert json.loads(call["args_json"])["position"] == [1, 2.5, -3]
    response = document["history"][2]["parts"][0]["function_response"]
    assert json.loads(response["response_json"]) == {"status": "success", "requires_reload": True}
    assert document["looped"] == 2
    assert document["user_input"] == "half-typed"
    assert [call["name"] for call in document["pending_calls"]] == ["a", "b", "c"]


def test_save_creates_parent_directories(tmp_path) -> None:
    """The first save creates missing directories."""

    store = StateStore(tmp_path / "nested" / "dir" / "state.json")
    store.save(LoopState())

    assert store.path.is_file()
    assert list(store.path.parent.iterdir()) == [store.path]


def test_missing_and_empty_files_load_as_none(tmp_path) -> None:
    """No file, or an empty one, means there is no saved conversation."""

    store = StateStore(tmp_path / "state.json")
    assert store.load() is None

    store.path.write_text("  \n", encoding="utf-8")
    assert store.load() is None


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        '{"history": "nope"}',
        '{"history": [{"role": "user", "parts": [{"function_call": '
        '{"name": "x", "args_json": "{broken"}}]}]}',
        '{"history": [{"role": "user", "parts": [{}]}]}',
    ],
)
def test_corrupt_files_degrade_to_none(tmp_path, caplog, content) -> None:
    """Corrupt state is logged as a warning and treated as absent."""

    store = StateStore(tmp_path / "state.json")
    store.path.write_text(content, encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        assert store.load() is None
    assert "corrupted" in caplog.text
    with pytest.raises(StateCorrupt):
        store.read()


def test_clear_removes_file(tmp_path) -> None:
    """Clearing deletes the file and is safe to repeat."""

    store = StateStore(tmp_path / "state.json")
    store.save(LoopState())

    store.clear()
    store.clear()

    assert not store.path.exists()
    assert store.load() is None


def test_undecodable_file_degrades_to_none(tmp_path, caplog) -> None:
    """Bytes that are not UTF-8 count as corruption, not as a crash."""

    store = StateStore(tmp_path / "state.json")
    store.path.write_bytes(b'{"history": "\xff\xfe"}')

    with caplog.at_level(logging.WARNING):
        assert store.load() is None
    assert "corrupted" in caplog.text
    with pytest.raises(StateCorrupt):
        store.read()
