"""
Main orchestration loop for toolloop.

One :class:`AgentLoop` owns one conversation.  A user message starts a bounded sequence of model
round-trips; every call the model requests is pushed onto the pending-call stack, drained through
the :class:`~toolloop.agent.tool_executor.ToolExecutor`, and the results are sent back to the
model.  The loop stops when the model answers without calls (and without the continuation
marker), when the iteration cap is reached, when :meth:`AgentLoop.stop` is called, or when the
model round-trip fails.

State is persisted at every turn boundary and whenever ``is_processing`` changes, so a
conversation interrupted mid-turn can be picked up again with :meth:`AgentLoop.resume`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Union,
)

from toolloop.agent.model_interface import BaseModelClient
from toolloop.agent.tool_executor import ToolExecutor
from toolloop.config import settings
from toolloop.core.errors import (
    ConversationBusy,
    MalformedModelResponse,
    ModelError,
)
from toolloop.core.schema import (
    CallRequest,
    LoopState,
    Role,
    Turn,
)
from toolloop.memory.state_store import StateStore
from toolloop.tools import (
    ToolRegistry,
    get_registry,
)

logger = logging.getLogger(__name__)

CONTINUE_MARKER = "[CONTINUE]"

HostSync = Callable[[], Union[None, Awaitable[Any]]]


class LoopOutcome(str, Enum):
    """Why the loop returned control to the caller."""

    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    STOPPED = "stopped"
    FAILED = "failed"


class CallOrder(str, Enum):
    """Execution order for several calls requested in one model turn."""

    REQUEST = "request"  # first requested, first executed
    STACK = "stack"  # last requested, first executed


class AgentLoop:
    """Drives one conversation between the user, the model and the tools."""

    def __init__(
        self,
        client: BaseModelClient,
        registry: ToolRegistry | None = None,
        store: StateStore | None = None,
        *,
        state: LoopState | None = None,
        max_iterations: int | None = None,
        system_instruction: Turn | None = None,
        host_sync: HostSync | None = None,
        call_order: CallOrder | str | None = None,
    ) -> None:
        self.client = client
        self.registry = registry or get_registry()
        self.executor = ToolExecutor(self.registry)
        self.store = store
        self.state = state or LoopState()
        self.max_iterations = (
            settings.MAX_RESPONSE_LOOP if max_iterations is None else max_iterations
        )
        self.system_instruction = system_instruction
        self.host_sync = host_sync
        self.call_order = CallOrder(call_order or settings.CALL_ORDER)
        self._running = False
        self._stop_requested = False

    @classmethod
    def restore(cls, client: BaseModelClient, store: StateStore, **kwargs: Any) -> AgentLoop:
        """Build a loop from persisted state, or with a fresh state if none can be read."""
        state = store.load()
        if state is None:
            logger.info("No usable chat state at %s; starting fresh", store.path)
        return cls(client, store=store, state=state, **kwargs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def needs_resume(self) -> bool:
        """True when persisted state shows an interrupted turn."""
        return not self._running and (self.state.is_processing or bool(self.state.pending_calls))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send(self, text: str) -> LoopOutcome:
        """
        Append a user message and run the loop until it returns to idle.

        Raises
        ------
        ConversationBusy
            If the conversation is already processing a message.
        """
        self._begin_turn()
        return await self._run(user_text=text)

    def submit(self, text: str) -> asyncio.Task[LoopOutcome]:
        """Schedule :meth:`send` on the running event loop and return immediately."""
        loop = asyncio.get_running_loop()
        self._begin_turn()
        return loop.create_task(self._run(user_text=text))

    async def resume(self) -> Optional[LoopOutcome]:
        """
        Continue a turn that was interrupted by a restart.

        Pending calls are drained first.  If the persisted state was still processing, the loop
        then re-enters from the persisted history without a new user message.  Returns *None*
        when there was nothing to resume.
        """
        if self._running:
            raise ConversationBusy("The conversation is already running.")
        if self.state.is_processing:
            logger.info("Resuming interrupted turn (iteration %d)", self.state.iteration_count)
            self._stop_requested = False
            return await self._run()
        if self.state.pending_calls:
            self._running = True
            try:
                await self._drain()
            finally:
                self._running = False
                self._save()
            return LoopOutcome.COMPLETED
        return None

    def stop(self) -> None:
        """
        Cooperatively stop the loop.

        Calls already executing are allowed to finish; only the next model round-trip is
        suppressed.
        """
        logger.info("Stop requested")
        self._stop_requested = True
        self.state.iteration_count = self.max_iterations
        self.state.is_processing = False
        if not self._running:
            self._save()

    def reset(self) -> None:
        """Clear the conversation and persist the empty state."""
        if self._running:
            raise ConversationBusy("Stop the conversation before resetting it.")
        self.state = LoopState()
        self._stop_requested = False
        self._save()

    def set_draft(self, text: str) -> None:
        self.state.user_input_draft = text
        self._save()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_idle(self) -> None:
        if self._running or self.state.is_processing:
            raise ConversationBusy("The conversation is still processing the previous message.")

    def _begin_turn(self) -> None:
        self._ensure_idle()
        self._running = True
        self._stop_requested = False
        self.state.iteration_count = 0
        self.state.user_input_draft = ""

    def _save(self) -> None:
        if self.store is not None:
            self.store.save(self.state)

    def _append(self, turn: Turn) -> None:
        self.state.history.append(turn)
        self._save()

    async def _run(self, user_text: str | None = None) -> LoopOutcome:
        self._running = True
        self.state.is_processing = True
        self._save()

        outcome = LoopOutcome.COMPLETED
        try:
            if self.state.pending_calls:
                await self._drain()
            if user_text is not None:
                self._append(Turn.user(user_text))

            while True:
                if self._stop_requested:
                    outcome = LoopOutcome.STOPPED
                    break
                if self.state.iteration_count >= self.max_iterations:
                    logger.info("Iteration cap of %d reached; ending turn", self.max_iterations)
                    outcome = LoopOutcome.ITERATION_LIMIT
                    break

                turn = await self._request()
                calls = turn.call_requests
                # Turn and its pending calls are persisted by the same save
                self._push(calls)
                self._append(turn)

                if calls:
                    logger.info(
                        "Model requested %d call(s): %s", len(calls), [c.name for c in calls]
                    )
                    await self._drain()
                    continue

                if CONTINUE_MARKER in (turn.trailing_text or ""):
                    logger.info("Continuation marker found; requesting another response")
                    continue
                break
        except ModelError as exc:
            logger.error("Model round-trip failed: %s", exc)
            self.state.history.append(Turn.reply(f"Error: {exc}"))
            outcome = LoopOutcome.FAILED
        finally:
            self.state.is_processing = False
            self._running = False
            self._save()

        logger.info(
            "Turn finished: %s after %d round-trip(s)", outcome.value, self.state.iteration_count
        )
        return outcome

    async def _request(self) -> Turn:
        turn = await self.client.generate(
            list(self.state.history), self.registry.discover(), self.system_instruction
        )
        self.state.iteration_count += 1
        if not turn.segments:
            raise MalformedModelResponse("The model did not return a valid response.")
        if turn.role is not Role.MODEL:
            turn = Turn(role=Role.MODEL, segments=turn.segments)
        return turn

    def _push(self, calls: List[CallRequest]) -> None:
        ordered = reversed(calls) if self.call_order is CallOrder.REQUEST else calls
        for call in ordered:
            self.state.pending_calls.push(call)

    async def _drain(self) -> None:
        results, needs_sync = await asyncio.to_thread(self.executor.drain, self.state.pending_calls)
        if results:
            self._append(Turn.tool(results))
        else:
            self._save()
        if needs_sync:
            await self._sync_host()

    async def _sync_host(self) -> None:
        self._save()
        if self.host_sync is None:
            logger.info("Host sync requested, but no handler is configured")
            return
        logger.info("Host sync requested by a tool. Synchronising...")
        try:
            pending = self.host_sync()
            if inspect.isawaitable(pending):
                await pending
        except Exception:  # pylint: disable=broad-except
            logger.exception("Host sync handler failed")
