# src/llmfleet/structured/__init__.py
"""
Structured output: schema generation, result-type registration and response mapping.
"""

from .response import map_response, response_ok
from .schema_generator import (
    ResultTypeRegistry,
    SchemaGenerator,
    default_result_types,
    result_type,
)

__all__ = [
    "SchemaGenerator",
    "ResultTypeRegistry",
    "default_result_types",
    "result_type",
    "map_response",
    "response_ok",
]
