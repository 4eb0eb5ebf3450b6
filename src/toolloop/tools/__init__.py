"""
Tool registry for toolloop.

Tools are plain functions marked with :func:`register_tool`.  Parameter descriptions are attached
with ``Annotated[<type>, ToolParam("...")]``.  A :class:`ToolRegistry` is built once from the
marked functions and is read-only afterwards; it produces the capability schemas sent to the
model and resolves the model's call names back to callables.

Example::

    @register_tool("Deletes a file from the workspace.")
    def delete_file(file_path: Annotated[str, ToolParam("Path relative to the workspace.")]) -> str:
        ...
"""

import inspect
import logging
from dataclasses import dataclass
from functools import lru_cache
from types import ModuleType
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    get_args,
    get_origin,
    get_type_hints,
)

from toolloop.core.errors import (
    DuplicateToolError,
    ToolNotFound,
)
from toolloop.core.schema import (
    CapabilitySchema,
    ParameterSchema,
)
from toolloop.tools.marshal import (
    NativeParameter,
    kind_for_annotation,
    to_pascal_case,
    to_snake_case,
)

logger = logging.getLogger(__name__)

_TOOL_MARKER = "__toolloop_tool__"


@dataclass(frozen=True)
class ToolParam:
    """Per-parameter description marker, used as ``Annotated`` metadata."""

    description: str


def register_tool(description: Optional[str] = None) -> Callable:
    """
    Mark a function as a tool the model may call.

    The external tool name is derived from the function name (``snake_case``).  The description
    defaults to the first paragraph of the function's docstring.

    Parameters
    ----------
    description: str, optional
        Text shown to the model.
    Returns
    -------
    Callable
        A decorator that marks the function and returns it unchanged.
    """

    def wrapper(fn: Callable) -> Callable:
        doc = inspect.getdoc(fn) or ""
        setattr(fn, _TOOL_MARKER, description or doc.split("\n\n")[0].strip())
        return fn

    return wrapper


def is_tool(obj: Any) -> bool:
    return callable(obj) and hasattr(obj, _TOOL_MARKER)


def external_name(fn: Callable) -> str:
    """External (model-facing) name of a tool function."""
    return to_snake_case(fn.__name__.lstrip("_"))


@dataclass(frozen=True)
class ToolEntry:
    """Binds a capability schema to its native callable."""

    schema: CapabilitySchema
    func: Callable[..., Any]
    parameters: Tuple[NativeParameter, ...]

    @property
    def name(self) -> str:
        return self.schema.name


def _param_description(annotation: Any) -> str:
    if get_origin(annotation) is Annotated:
        for meta in get_args(annotation)[1:]:
            if isinstance(meta, ToolParam):
                return meta.description
    return ""


def build_entry(fn: Callable) -> ToolEntry:
    """Synthesize the schema and parameter list for one tool function."""
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn, include_extras=True)

    native_params: List[NativeParameter] = []
    schema_params: List[ParameterSchema] = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = type_hints.get(param_name, str)
        kind, item_kind = kind_for_annotation(annotation)
        ext = to_snake_case(param_name)
        native_params.append(
            NativeParameter(
                name=param_name,
                external_name=ext,
                kind=kind,
                item_kind=item_kind,
                default=param.default,
            )
        )
        schema_params.append(
            ParameterSchema(
                name=ext,
                kind=kind,
                item_kind=item_kind,
                description=_param_description(annotation),
                required=param.default is inspect.Parameter.empty,
            )
        )

    schema = CapabilitySchema(
        name=external_name(fn),
        description=getattr(fn, _TOOL_MARKER, None) or inspect.getdoc(fn) or "",
        parameters=schema_params,
    )
    return ToolEntry(schema=schema, func=fn, parameters=tuple(native_params))


class ToolRegistry:
    """Immutable name -> tool map with cached capability schemas."""

    def __init__(self, functions: Iterable[Callable]) -> None:
        entries: Dict[str, ToolEntry] = {}
        for fn in functions:
            entry = build_entry(fn)
            key = to_pascal_case(entry.name)
            existing = entries.get(key)
            if existing is not None and existing.func is not fn:
                raise DuplicateToolError(
                    f"Tools '{existing.func.__qualname__}' and '{fn.__qualname__}' "
                    f"both map to the name '{entry.name}'."
                )
            logger.debug("Registering tool '%s'", entry.name)
            entries[key] = entry
        self._entries = entries
        self._schemas = tuple(entry.schema for entry in entries.values())

    @classmethod
    def from_functions(cls, functions: Iterable[Callable]) -> "ToolRegistry":
        return cls(functions)

    @classmethod
    def from_modules(cls, *modules: ModuleType) -> "ToolRegistry":
        """Scan *modules* for functions marked with :func:`register_tool`."""
        found: List[Callable] = []
        for module in modules:
            for _, obj in inspect.getmembers(module, is_tool):
                if obj not in found:
                    found.append(obj)
        return cls(found)

    def discover(self) -> List[CapabilitySchema]:
        """Capability schemas for every registered tool."""
        return list(self._schemas)

    def resolve(self, name: str) -> ToolEntry:
        """
        Look up a tool by its external name.

        Raises
        ------
        ToolNotFound
            If no tool is registered under *name*.
        """
        entry = self._entries.get(to_pascal_case(name))
        if entry is None:
            raise ToolNotFound(name)
        return entry

    def names(self) -> List[str]:
        return [entry.name for entry in self._entries.values()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and to_pascal_case(name) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@lru_cache(maxsize=1)
def get_registry() -> ToolRegistry:
    """The process-wide registry of bundled tools, built on first use."""
    from toolloop.tools import workspace_tools  # pylint: disable=import-outside-toplevel

    registry = ToolRegistry.from_modules(workspace_tools)
    logger.info("Tool registry ready with %d tools: %s", len(registry), registry.names())
    return registry
