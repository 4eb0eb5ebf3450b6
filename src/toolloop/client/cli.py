"""CLI client for the toolloop API."""

from __future__ import annotations

import json
import logging
from typing import (
    Any,
    Dict,
    Tuple,
    cast,
)

import httpx

from toolloop.common import (
    AnsiColors,
    colored_print,
)
from toolloop.config import settings

logger = logging.getLogger(__name__)

_COMMANDS = "Commands: /stop, /reset, /history, /tools, exit"


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str, data: Dict[str, Any] | None = None, method: str = "POST", max_retries: int = 5
) -> Dict[str, Any]:
    """Make a request to the API and return the response with retries."""
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"

    for attempt in range(max_retries):
        try:
            timeout = settings.REQUEST_TIMEOUT * settings.MAX_RESPONSE_LOOP
            with httpx.Client(timeout=timeout) as client:
                response = client.request(method, api_url, json=data)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
        except httpx.HTTPStatusError as e:
            detail = e.response.text
            try:
                detail = e.response.json().get("detail", detail)
            except ValueError:
                pass
            error_msg = f"API error: {detail}"
            colored_print(error_msg, AnsiColors.RED)
            return {"error": error_msg}
        except httpx.HTTPError as e:
            # On connection refused, retry with exponential backoff
            if isinstance(e, httpx.ConnectError) and attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                import time  # pylint: disable=import-outside-toplevel

                time.sleep(retry_delay)
                continue

            logger.error("API request error: %s", str(e))
            error_msg = f"Error connecting to API: {str(e)}"
            colored_print(error_msg, AnsiColors.RED)
            return {"error": error_msg}

    error_msg = f"Failed to connect to API after {max_retries} attempts"
    colored_print(error_msg, AnsiColors.RED)
    return {"error": error_msg}


def render_turn(turn: Dict[str, Any]) -> None:
    """Print one turn of the transcript."""
    role = turn.get("role")
    for segment in turn.get("segments", []):
        if segment.get("text"):
            if role == "user":
                colored_print(f"You: {segment['text']}", AnsiColors.BLUE)
            else:
                colored_print(segment["text"], AnsiColors.YELLOW)
        elif segment.get("call_request"):
            call = segment["call_request"]
            args = json.dumps(call.get("args"), ensure_ascii=False)
            colored_print(f"-> {call['name']}({args})", AnsiColors.MAGENTA)
        elif segment.get("call_result"):
            result = segment["call_result"]
            payload = result.get("payload")
            failed = isinstance(payload, dict) and payload.get("status") == "error"
            color = AnsiColors.RED if failed else AnsiColors.GREEN
            colored_print(f"<- [{result['name']}] {json.dumps(payload, ensure_ascii=False)}", color)


def run_cli() -> None:
    """Run the CLI client that communicates with the API."""
    session = call_api("/sessions", {})
    session_id = session.get("session_id")

    if not session_id:
        colored_print("Failed to create a session", AnsiColors.RED)
        return

    colored_print("\ntoolloop shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    colored_print(_COMMANDS, AnsiColors.GREEN)
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        if user_msg == "/stop":
            call_api(f"/sessions/{session_id}/stop")
        elif user_msg == "/reset":
            call_api(f"/sessions/{session_id}/reset")
            colored_print("Conversation cleared.", AnsiColors.GREEN)
        elif user_msg == "/history":
            history = call_api(f"/sessions/{session_id}/history", method="GET")
            for turn in history.get("history", []):
                render_turn(turn)
        elif user_msg == "/tools":
            tools = call_api("/tools", method="GET")
            for tool in tools if isinstance(tools, list) else []:
                colored_print(f"- {tool['name']}: {tool['description']}", AnsiColors.GREEN)
        else:
            response = call_api("/agent", {"message": user_msg, "session_id": session_id})
            for turn in response.get("turns", []):
                if turn.get("role") != "user":
                    render_turn(turn)
            if response.get("outcome") == "iteration_limit":
                colored_print("(stopped: iteration limit reached)", AnsiColors.RED)


if __name__ == "__main__":
    run_cli()
