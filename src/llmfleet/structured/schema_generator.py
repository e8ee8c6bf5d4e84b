# src/llmfleet/structured/schema_generator.py
"""
Structural (JSON-Schema-like) descriptions of result types.

Result types are registered explicitly by name, either through
`ResultTypeRegistry.register()` or the `@result_type("Name")` decorator, and
may be pydantic models or dataclasses. The generated schema is what the
remote service receives as `response_format` when an agent or a stateless
completion asks for structured output.

Mapping of Python types:
    str -> string, int -> integer, float -> number, bool -> boolean
    dict[K, V] / Mapping -> object, additionalProperties = describe(V)
    list / tuple / set / Sequence -> array, items = describe(item)
    unresolvable or untyped item -> {"type": "object", "additionalProperties": false}
    Optional[X] -> describe(X)
    Enum / Literal -> enum of the member values
    BaseModel / dataclass -> object with properties and required fields

Usage:
    @result_type("Weather")
    class Weather(BaseModel):
        location: str
        temperature: float

    schema = SchemaGenerator().describe(Weather)
    fmt = SchemaGenerator().response_format("Weather", Weather)
"""

import collections.abc
import dataclasses
import enum
import logging
import threading
import types
import typing
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from ..exceptions import SchemaGenerationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNSTRUCTURED_SCHEMA: Dict[str, Any] = {"type": "object"}
OBJECT_STUB: Dict[str, Any] = {"type": "object", "additionalProperties": False}

_SCALARS: Dict[Any, str] = {
    str: "string",
    bool: "boolean",
    int: "integer",
    float: "number",
}

_MAPPING_ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)
_SEQUENCE_ORIGINS = (
    list,
    tuple,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
)


def _is_structured(tp: Any) -> bool:
    return isinstance(tp, type) and (issubclass(tp, BaseModel) or dataclasses.is_dataclass(tp))


def _unwrap_optional(tp: Any) -> Any:
    if typing.get_origin(tp) is typing.Union or _is_pep604_union(tp):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return _unwrap_optional(args[0])
    return tp


def _is_pep604_union(tp: Any) -> bool:
    return isinstance(tp, types.UnionType)


def _is_mapping(tp: Any) -> bool:
    tp = _unwrap_optional(tp)
    origin = typing.get_origin(tp) or tp
    return isinstance(origin, type) and issubclass(origin, _MAPPING_ORIGINS)


class SchemaGenerator:
    """
    Builds schema nodes for registered result types.

    `describe()` never raises. A field, item or value type that cannot be
    described becomes an empty object stub; a failure on the root type itself
    degrades to an unstructured object schema.
    """

    def describe(self, tp: Any) -> Dict[str, Any]:
        try:
            return self._describe(tp, frozenset())
        except Exception as e:
            name = getattr(tp, "__name__", repr(tp))
            if not isinstance(e, SchemaGenerationError):
                e = SchemaGenerationError(name, f"Unexpected failure: {e}")
            logger.warning(f"Schema generation degraded to unstructured object: {e}")
            return dict(UNSTRUCTURED_SCHEMA)

    def response_format(self, name: Optional[str], tp: Any) -> Dict[str, Any]:
        """
        Builds a `response_format` payload for structured output.

        Falls back to plain JSON mode when there is no type or its schema is
        unstructured (strict mode rejects open objects).
        """
        if tp is None or not name:
            return {"type": "json_object"}
        schema = self.describe(tp)
        if schema == UNSTRUCTURED_SCHEMA:
            return {"type": "json_object"}
        return {
            "type": "json_schema",
            "json_schema": {
                "name": f"{name.lower()}_format",
                "schema": schema,
                "strict": True,
            },
        }

    def _describe(self, tp: Any, visited: FrozenSet[Any]) -> Dict[str, Any]:
        tp = _unwrap_optional(tp)

        if tp in _SCALARS:
            return {"type": _SCALARS[tp]}

        if isinstance(tp, type) and issubclass(tp, enum.Enum):
            return self._describe_enum([member.value for member in tp])

        origin = typing.get_origin(tp)
        args = typing.get_args(tp)

        if origin is typing.Literal:
            return self._describe_enum(list(args))

        if origin is typing.Union or _is_pep604_union(tp):
            options = [a for a in args if a is not type(None)]
            return {"anyOf": [self._describe(a, visited) for a in options]}

        if _is_structured(tp):
            if tp in visited:
                return dict(OBJECT_STUB)
            return self._describe_structured(tp, visited | {tp})

        container = origin or tp
        if isinstance(container, type) and issubclass(container, _MAPPING_ORIGINS):
            value_type = args[1] if len(args) == 2 else None
            if value_type is None or value_type is Any:
                additional: Dict[str, Any] = {"type": "string"}
            else:
                additional = self._describe_nested(value_type, visited)
            return {"type": "object", "additionalProperties": additional}

        if isinstance(container, type) and issubclass(container, _SEQUENCE_ORIGINS) and container is not str:
            item_args = [a for a in args if a is not Ellipsis]
            if not item_args or item_args[0] is Any:
                items: Dict[str, Any] = dict(OBJECT_STUB)
            else:
                items = self._describe_nested(item_args[0], visited)
            return {"type": "array", "items": items}

        raise SchemaGenerationError(getattr(tp, "__name__", repr(tp)), "Unsupported type.")

    def _describe_nested(self, tp: Any, visited: FrozenSet[Any]) -> Dict[str, Any]:
        """Describes a field, item or value type; an unresolvable one becomes an empty object stub."""
        try:
            return self._describe(tp, visited)
        except Exception as e:
            name = getattr(tp, "__name__", repr(tp))
            if not isinstance(e, SchemaGenerationError):
                e = SchemaGenerationError(name, f"Unexpected failure: {e}")
            logger.warning(f"Schema node replaced by empty object: {e}")
            return dict(OBJECT_STUB)

    @staticmethod
    def _describe_enum(values: List[Any]) -> Dict[str, Any]:
        if values and all(isinstance(v, bool) for v in values):
            kind = "boolean"
        elif values and all(isinstance(v, int) and not isinstance(v, bool) for v in values):
            kind = "integer"
        elif values and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
            kind = "number"
        else:
            kind = "string"
            values = [v if isinstance(v, str) else str(v) for v in values]
        return {"type": kind, "enum": values}

    def _describe_structured(self, tp: type, visited: FrozenSet[Any]) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for field_name, annotation, description in self._fields_of(tp):
            if annotation is Any or annotation is object:
                continue
            node = self._describe_nested(annotation, visited)
            if description:
                node = {**node, "description": description}
            properties[field_name] = node
            if not _is_mapping(annotation):
                required.append(field_name)
        return {
            "type": "object",
            "additionalProperties": False,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _fields_of(tp: type) -> List[Tuple[str, Any, Optional[str]]]:
        if issubclass(tp, BaseModel):
            return [
                (info.alias or name, info.annotation, info.description)
                for name, info in tp.model_fields.items()
            ]
        hints = typing.get_type_hints(tp)
        return [
            (f.name, hints.get(f.name, f.type), f.metadata.get("description") if f.metadata else None)
            for f in dataclasses.fields(tp)
        ]


class ResultTypeRegistry:
    """Explicit mapping from result-type name to a describable type."""

    def __init__(self) -> None:
        self._types: Dict[str, type] = {}
        self._lock = threading.Lock()

    def register(self, name: str, tp: type) -> type:
        if not _is_structured(tp):
            raise TypeError(f"Result type '{name}' must be a pydantic model or a dataclass, got {tp!r}")
        with self._lock:
            existing = self._types.get(name)
            if existing is not None and existing is not tp:
                logger.warning(f"Result type '{name}' re-registered: {existing.__name__} -> {tp.__name__}")
            self._types[name] = tp
        return tp

    def get(self, name: Optional[str]) -> Optional[type]:
        if not name:
            return None
        with self._lock:
            return self._types.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._types


default_result_types = ResultTypeRegistry()


def result_type(name: Optional[str] = None, registry: Optional[ResultTypeRegistry] = None) -> Callable[[Type[T]], Type[T]]:
    """Class decorator registering a result type under `name` (defaults to the class name)."""
    def decorator(cls: Type[T]) -> Type[T]:
        (registry or default_result_types).register(name or cls.__name__, cls)
        return cls
    return decorator
