"""
Argument marshaling between the model's calling convention and native Python calls.

The model addresses tools and parameters in ``snake_case`` and sends untyped JSON argument trees.
This module translates names, coerces values to the four primitive kinds (plus arrays of them),
fills in defaults, and converts tool return values back into structured payloads.
"""

import collections.abc
import inspect
import json
import re
import types
from dataclasses import dataclass
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
    get_args,
    get_origin,
)

from toolloop.core.errors import (
    ArgumentCoercionFailure,
    MissingArgument,
)
from toolloop.core.schema import ParamKind

_CAMEL_BOUNDARY = re.compile(r"(?<=.)([A-Z])")

_PRIMITIVE_KINDS: Dict[Any, ParamKind] = {
    str: ParamKind.STRING,
    int: ParamKind.INTEGER,
    float: ParamKind.NUMBER,
    bool: ParamKind.BOOLEAN,
}

_ARRAY_ORIGINS = (list, tuple, set, frozenset)


# ---------------------------------------------------------------------------
# Name conventions
# ---------------------------------------------------------------------------
def to_snake_case(text: str) -> str:
    """``CreateGameObject`` -> ``create_game_object``.  Already snake_case names pass through."""
    return _CAMEL_BOUNDARY.sub(r"_\1", text).lower()


def to_pascal_case(text: str) -> str:
    """``create_game_object`` -> ``CreateGameObject``."""
    return "".join(part[0].upper() + part[1:] for part in text.split("_") if part)


def _fold(key: str) -> str:
    return key.replace("_", "").lower()


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------
def _unwrap(annotation: Any) -> Any:
    """Strip ``Annotated`` and ``Optional`` wrappers."""
    while True:
        origin = get_origin(annotation)
        if origin is Annotated:
            annotation = get_args(annotation)[0]
            continue
        if origin is Union or origin is types.UnionType:
            members = [arg for arg in get_args(annotation) if arg is not type(None)]
            if len(members) == 1:
                annotation = members[0]
                continue
        return annotation


def _is_array(annotation: Any) -> bool:
    if annotation in _ARRAY_ORIGINS:
        return True
    origin = get_origin(annotation)
    if origin in _ARRAY_ORIGINS:
        return True
    return (
        isinstance(origin, type)
        and issubclass(origin, collections.abc.Sequence)
        and not issubclass(origin, (str, bytes))
    )


def kind_for_annotation(annotation: Any) -> Tuple[ParamKind, Optional[ParamKind]]:
    """
    Map a Python annotation to a parameter kind and, for arrays, an item kind.

    Unknown annotations (including a missing one) map to ``string``.
    """
    annotation = _unwrap(annotation)
    if _is_array(annotation):
        item_args = [arg for arg in get_args(annotation) if arg is not Ellipsis]
        item_kind = _PRIMITIVE_KINDS.get(_unwrap(item_args[0])) if item_args else None
        return ParamKind.ARRAY, item_kind or ParamKind.STRING
    return _PRIMITIVE_KINDS.get(annotation, ParamKind.STRING), None


@dataclass(frozen=True)
class NativeParameter:
    """One parameter of a native tool function, as seen by the marshaler."""

    name: str
    external_name: str
    kind: ParamKind = ParamKind.STRING
    item_kind: Optional[ParamKind] = None
    default: Any = inspect.Parameter.empty

    @property
    def required(self) -> bool:
        return self.default is inspect.Parameter.empty


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------
def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value)


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ArgumentCoercionFailure(f"expected an integer, got boolean {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            try:
                value = float(value)
            except ValueError as exc:
                raise ArgumentCoercionFailure(f"expected an integer, got {value!r}") from exc
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ArgumentCoercionFailure(f"expected an integer, got {value!r}")


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ArgumentCoercionFailure(f"expected a number, got boolean {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ArgumentCoercionFailure(f"expected a number, got {value!r}") from exc
    raise ArgumentCoercionFailure(f"expected a number, got {value!r}")


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    raise ArgumentCoercionFailure(f"expected a boolean, got {value!r}")


_COERCERS: Dict[ParamKind, Callable[[Any], Any]] = {
    ParamKind.STRING: _to_string,
    ParamKind.INTEGER: _to_integer,
    ParamKind.NUMBER: _to_number,
    ParamKind.BOOLEAN: _to_boolean,
}


def coerce_value(value: Any, kind: ParamKind, item_kind: Optional[ParamKind] = None) -> Any:
    """Convert *value* to the native type for *kind*; ``None`` passes through."""
    if value is None:
        return None
    if kind is ParamKind.ARRAY:
        items = value
        if isinstance(value, str):
            try:
                items = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ArgumentCoercionFailure(f"expected an array, got {value!r}") from exc
        if not isinstance(items, list):
            raise ArgumentCoercionFailure(f"expected an array, got {value!r}")
        return [coerce_value(item, item_kind or ParamKind.STRING) for item in items]
    return _COERCERS[kind](value)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
def marshal_arguments(args: Any, parameters: Sequence[NativeParameter]) -> Dict[str, Any]:
    """
    Turn a call's argument tree into keyword arguments for the native function.

    Parameters
    ----------
    args:
        The model-supplied argument tree.  Anything that is not a JSON object is treated as
        an empty object.
    parameters:
        Target parameter list, in declaration order.

    Returns
    -------
    Dict[str, Any]
        Native keyword arguments, one per parameter.  Keys in *args* that match no parameter
        are ignored.

    Raises
    ------
    MissingArgument
        If a required parameter has no matching key.
    ArgumentCoercionFailure
        If a value cannot be coerced to its parameter's kind.
    """
    tree: Mapping[str, Any] = args if isinstance(args, Mapping) else {}
    folded = {_fold(key): value for key, value in tree.items()}

    kwargs: Dict[str, Any] = {}
    for param in parameters:
        if param.external_name in tree:
            raw = tree[param.external_name]
        elif param.name in tree:
            raw = tree[param.name]
        elif _fold(param.external_name) in folded:
            raw = folded[_fold(param.external_name)]
        elif not param.required:
            kwargs[param.name] = param.default
            continue
        else:
            raise MissingArgument(param.external_name)

        try:
            kwargs[param.name] = coerce_value(raw, param.kind, param.item_kind)
        except ArgumentCoercionFailure as exc:
            raise ArgumentCoercionFailure(
                f"Invalid value for argument '{param.external_name}': {exc}"
            ) from exc
    return kwargs


def payload_from_result(value: Any) -> Any:
    """
    Convert a tool's return value into a JSON-compatible payload.

    Tools usually return a JSON object encoded as a string; that object becomes the payload.
    Any other string, or any non-mapping value, is wrapped as ``{"content": ...}``.
    """
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {"content": value}
        return parsed if isinstance(parsed, dict) else {"content": parsed}
    if isinstance(value, Mapping):
        return json.loads(json.dumps(dict(value), default=str))
    return {"content": json.loads(json.dumps(value, default=str))}
