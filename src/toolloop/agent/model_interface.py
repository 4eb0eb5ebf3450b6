"""
Model interface for toolloop.

This module is the only place that *directly* calls an LLM.  Everything else (agent loop, tools,
state store) stays model-agnostic and only deals in :class:`~toolloop.core.schema.Turn` objects.

Out of the box we ship a client for the Gemini ``generateContent`` REST endpoint.  Additional
providers can be added by subclassing :class:`BaseModelClient` and registering via
:func:`register_client`.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Type,
)

import httpx
from pydantic import ValidationError

from toolloop.config import settings
from toolloop.core.errors import (
    MalformedModelResponse,
    ModelTransportFailure,
)
from toolloop.core.schema import (
    CallRequest,
    CapabilitySchema,
    Role,
    Segment,
    Turn,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_CLIENT_REGISTRY: dict[str, Type["BaseModelClient"]] = {}


def register_client(name: str) -> Callable:
    """Decorator to register a model client class under *name*."""

    def wrapper(cls: Type["BaseModelClient"]) -> Type["BaseModelClient"]:
        _CLIENT_REGISTRY[name] = cls
        return cls

    return wrapper


def load_client(name: str | None = None) -> "BaseModelClient":
    """
    Factory that returns an instantiated model client.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_CLIENT`` env option
    """

    target = name or settings.MODEL_CLIENT
    cls = _CLIENT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model client '{target}' is not registered.")
    return cls()


def load_system_instruction(path: str | Path | None = None) -> Optional[Turn]:
    """Read the system instruction file, if one is configured and exists."""
    target = path or settings.SYSTEM_INSTRUCTION_FILE
    if not target:
        return None
    file_path = Path(target).expanduser().resolve()
    if not file_path.is_file():
        logger.warning("System instruction file not found: %s", file_path)
        return None
    logger.info("Loaded system instruction from: %s", file_path)
    return Turn(role=Role.SYSTEM, segments=[Segment(text=file_path.read_text(encoding="utf-8"))])


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseModelClient(ABC):
    """Abstract client that turns a conversation into the model's next turn."""

    @abstractmethod
    async def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[CapabilitySchema],
        system_instruction: Optional[Turn] = None,
    ) -> Turn:
        """
        Send the full history and capability schemas; return the model's turn.

        Raises
        ------
        ModelTransportFailure
            If the request could not be completed.
        MalformedModelResponse
            If the response holds no usable content.
        """


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------
_WIRE_ROLES = {Role.USER: "user", Role.MODEL: "model", Role.TOOL: "user", Role.SYSTEM: "user"}


def _upper_types(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Gemini spells schema types in upper case (``STRING``, ``OBJECT`` ...)."""
    converted: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties" and isinstance(value, dict):
            converted[key] = {name: _upper_types(prop) for name, prop in value.items()}
        elif isinstance(value, dict):
            converted[key] = _upper_types(value)
        else:
            converted[key] = value
    return converted


@register_client("gemini")
class GeminiClient(BaseModelClient):
    """Client for the Gemini ``models/<model>:generateContent`` endpoint, using httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        base_url: str | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip("/")
        self.temperature = settings.TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self._transport = transport

    # -- request -------------------------------------------------------------
    @staticmethod
    def _part_to_wire(segment: Segment) -> Dict[str, Any]:
        if segment.call_request is not None:
            call = segment.call_request
            return {"functionCall": {"name": call.name, "args": call.args}}
        if segment.call_result is not None:
            result = segment.call_result
            response = result.payload
            if not isinstance(response, dict):
                response = {"content": response}
            return {"functionResponse": {"name": result.name, "response": response}}
        return {"text": segment.text}

    def build_request(
        self,
        history: Sequence[Turn],
        tools: Sequence[CapabilitySchema],
        system_instruction: Optional[Turn] = None,
    ) -> Dict[str, Any]:
        """Translate the conversation into a ``generateContent`` request body."""
        body: Dict[str, Any] = {
            "contents": [
                {
                    "role": _WIRE_ROLES[turn.role],
                    "parts": [self._part_to_wire(s) for s in turn.segments],
                }
                for turn in history
            ],
            "generationConfig": {"temperature": self.temperature},
        }
        if tools:
            declarations = []
            for tool in tools:
                declaration: Dict[str, Any] = {"name": tool.name, "description": tool.description}
                if tool.parameters:
                    declaration["parameters"] = _upper_types(tool.as_json_schema())
                declarations.append(declaration)
            body["tools"] = [{"functionDeclarations": declarations}]
        if system_instruction is not None:
            body["systemInstruction"] = {"parts": [{"text": system_instruction.text}]}
        return body

    # -- response ------------------------------------------------------------
    @staticmethod
    def parse_response(body: Any) -> Turn:
        """
        Extract the first candidate's content as a model turn.

        Raises
        ------
        MalformedModelResponse
            If the body does not hold at least one text or function-call part.
        """
        if not isinstance(body, dict):
            raise MalformedModelResponse("The model did not return a valid response.")
        try:
            return GeminiClient._parse_candidate(body)
        except (ValidationError, AttributeError, TypeError) as exc:
            raise MalformedModelResponse(f"The model returned an invalid part: {exc}") from exc

    @staticmethod
    def _parse_candidate(body: Dict[str, Any]) -> Turn:
        candidates = body.get("candidates") or []
        first = candidates[0] if isinstance(candidates, list) and candidates else None
        content = first.get("content") if isinstance(first, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not parts or not isinstance(parts, list):
            feedback = body.get("promptFeedback")
            reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            detail = f" (blocked: {reason})" if reason else ""
            raise MalformedModelResponse(f"The model did not return a valid response{detail}.")

        segments: List[Segment] = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            if "functionCall" in part:
                call = part["functionCall"] or {}
                segments.append(
                    Segment(
                        call_request=CallRequest(
                            name=call.get("name", ""), args=call.get("args") or {}
                        )
                    )
                )
            elif part.get("text") is not None:
                segments.append(Segment(text=part["text"]))
        if not segments:
            raise MalformedModelResponse("The model returned no text or function calls.")
        return Turn(role=Role.MODEL, segments=segments)

    async def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[CapabilitySchema],
        system_instruction: Optional[Turn] = None,
    ) -> Turn:
        if not self.api_key:
            raise ModelTransportFailure("Gemini API key is not configured (GEMINI_API_KEY).")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = self.build_request(history, tools, system_instruction)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    url, json=payload, headers={"x-goog-api-key": self.api_key}
                )
        except httpx.HTTPError as e:
            logger.error("Gemini request error: %s", str(e))
            raise ModelTransportFailure(f"Error calling Gemini: {e}") from e

        if resp.is_error:
            raise ModelTransportFailure(
                f"API request failed with status code {resp.status_code}: {resp.text}"
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise MalformedModelResponse("Failed to deserialize API response.") from e

        logger.debug("Gemini response: %s", body)
        return self.parse_response(body)
