# src/llmfleet/__init__.py
"""
LLMFleet - agents and completions routed over a pool of OpenAI-compatible instances.

Requests for a logical agent are distributed across several backend
instances (accounts, regions, gateway deployments), each serving its own
subset of models, with per-model round-robin routing, thread affinity,
shared rate limiting, retry with backoff and structured-output schemas.
"""

from importlib.metadata import PackageNotFoundError, version

from .api import LLMFleet
from .config import FleetConfig, InstanceConfig, load_fleet_config
from .exceptions import (
    AgentNotFoundError,
    ConfigError,
    ContentRejectedError,
    ExchangeTimeoutError,
    LLMFleetError,
    ModelNotServedError,
    NativeIdMissingError,
    ProviderError,
    RetriesExhaustedError,
    RunFailedError,
    SchemaGenerationError,
    TransientRemoteError,
)
from .models import Agent, ExchangeResult, ProviderKind, ResourceKind, RunStatus
from .structured import ResultTypeRegistry, SchemaGenerator, result_type

try:
    __version__ = version("llmfleet")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "LLMFleet",
    "FleetConfig",
    "InstanceConfig",
    "load_fleet_config",
    "Agent",
    "ExchangeResult",
    "ProviderKind",
    "ResourceKind",
    "RunStatus",
    "SchemaGenerator",
    "ResultTypeRegistry",
    "result_type",
    "LLMFleetError",
    "ConfigError",
    "ModelNotServedError",
    "AgentNotFoundError",
    "NativeIdMissingError",
    "ProviderError",
    "TransientRemoteError",
    "ExchangeTimeoutError",
    "RunFailedError",
    "ContentRejectedError",
    "RetriesExhaustedError",
    "SchemaGenerationError",
]
