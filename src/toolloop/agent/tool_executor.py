"""Dispatches calls to tools registered in ``toolloop.tools`` and wraps errors as results."""

import logging
from typing import (
    Any,
    List,
    Tuple,
)

from toolloop.core.errors import (
    CapabilityExecutionFault,
    ToolExecutionError,
)
from toolloop.core.schema import (
    CallRequest,
    CallResult,
    PendingCallStack,
)
from toolloop.tools import ToolRegistry
from toolloop.tools.marshal import (
    marshal_arguments,
    payload_from_result,
)

logger = logging.getLogger(__name__)

HOST_SYNC_FLAG = "requires_reload"
"""Payload key a tool sets to ``true`` when host-side derived state must be refreshed."""


def error_result(name: str, exc: ToolExecutionError) -> CallResult:
    """Structured error result the model can read and react to."""
    return CallResult(
        name=name,
        payload={"status": "error", "error": exc.kind, "message": str(exc)},
    )


def _requests_host_sync(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get(HOST_SYNC_FLAG) is True


class ToolExecutor:
    """Executes one call at a time against a read-only :class:`ToolRegistry`."""

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    def execute(self, call: CallRequest) -> CallResult:
        """
        Look up *call* in the registry and invoke it.

        Never raises: an unknown tool, bad arguments, or an exception inside the tool all
        produce a :class:`CallResult` whose payload has ``status == "error"``.
        """
        try:
            entry = self.registry.resolve(call.name)
            kwargs = marshal_arguments(call.args, entry.parameters)
        except ToolExecutionError as exc:
            logger.warning("Cannot execute tool '%s': %s", call.name, exc)
            return error_result(call.name, exc)

        try:
            logger.debug("Executing tool '%s' with args=%s", call.name, kwargs)
            value = entry.func(**kwargs)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unhandled error in tool '%s'", call.name)
            return error_result(call.name, CapabilityExecutionFault(str(exc) or type(exc).__name__))

        if value is None:
            return error_result(call.name, CapabilityExecutionFault("Function returned null."))

        try:
            payload = payload_from_result(value)
            result = CallResult(
                name=call.name, payload=payload, requires_host_sync=_requests_host_sync(payload)
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Tool '%s' returned a value that is not JSON: %s", call.name, exc)
            return error_result(
                call.name, CapabilityExecutionFault(f"Function returned an invalid result: {exc}")
            )
        logger.info("Tool '%s' returned: %s", call.name, payload)
        return result

    def drain(self, stack: PendingCallStack) -> Tuple[List[CallResult], bool]:
        """
        Pop and execute every pending call.

        Returns
        -------
        Tuple[List[CallResult], bool]
            Results in pop order, and whether any of them asked for a host sync.
        """
        results: List[CallResult] = []
        while stack:
            results.append(self.execute(stack.pop()))
        needs_sync = any(result.requires_host_sync for result in results)
        if needs_sync:
            logger.info(
                "Host sync requested by %d call(s)", sum(r.requires_host_sync for r in results)
            )
        return results, needs_sync
