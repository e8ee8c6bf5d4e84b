# src/llmfleet/structured/response.py
"""
Helpers for turning exchange text into typed results.
"""

import logging
from typing import Any, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

from ..exceptions import LLMFleetError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def map_response(text: str, result_cls: Type[T]) -> T:
    """
    Validates JSON `text` into `result_cls` (pydantic model or dataclass).

    Raises:
        LLMFleetError: If the text is not valid JSON for the type.
    """
    try:
        return TypeAdapter(result_cls).validate_json(text)
    except ValidationError as e:
        name = getattr(result_cls, "__name__", repr(result_cls))
        logger.error(f"Failed to map response to {name}: {e}")
        raise LLMFleetError(f"Failed to map response to {name}: {e}") from e


def response_ok(text: Any) -> bool:
    """
    Checks that a response is non-empty and, when it looks like JSON, that
    its braces or brackets balance (a cheap truncation check).
    """
    if not isinstance(text, str) or not text.strip():
        return False
    trimmed = text.strip()
    if trimmed[0] not in "{[":
        return True

    depth = 0
    in_string = False
    escaped = False
    for ch in trimmed:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0 and not in_string
