# src/llmfleet/config/__init__.py
"""
Configuration package for the LLMFleet library.

Sources, lowest to highest precedence:
    - Pydantic model defaults
    - TOML file passed to LLMFleet.create(config_path=...)
    - Config dictionary
    - Environment variables: LLMFLEET__<SECTION>__<KEY>
    - Runtime overrides
"""

from .loader import load_fleet_config
from .models import (
    AgentsSectionConfig,
    FleetConfig,
    InstanceConfig,
    LoggingSectionConfig,
    PollingConfig,
    RateLimitConfig,
    RetryConfig,
    SanitizerConfig,
)

__all__ = [
    "load_fleet_config",
    "FleetConfig",
    "InstanceConfig",
    "RateLimitConfig",
    "RetryConfig",
    "PollingConfig",
    "AgentsSectionConfig",
    "SanitizerConfig",
    "LoggingSectionConfig",
]
