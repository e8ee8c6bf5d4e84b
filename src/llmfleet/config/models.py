# src/llmfleet/config/models.py
"""
Fleet configuration models.

This module defines Pydantic models for every LLMFleet configuration
section. The hierarchy:

    FleetConfig (root)
    ├── instances   - Backend instance descriptors (list)
    ├── rate_limit  - Shared token-bucket settings
    ├── retry       - Retry/backoff policy
    ├── polling     - Run status polling
    ├── agents      - Agent definition store and materialization
    ├── sanitizer   - Content-rejected fallback agent
    └── logging     - Passed to configure_logging()

Usage:
    >>> config = FleetConfig(instances=[{"id": "main", "api_key": "sk-x", "models": "gpt-4o"}])
    >>> config.retry.max_retries
    3
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from ..models import ProviderKind

logger = logging.getLogger(__name__)

DIRECT_API_KEY_ENV = "OPENAI_API_KEY"
GATEWAY_API_KEY_ENV = "AZURE_OPENAI_API_KEY"


# =============================================================================
# INSTANCES
# =============================================================================


class InstanceConfig(BaseModel):
    """
    One configured backend endpoint/credential pair.

    `models` accepts either a list or a comma-separated string. A missing
    `api_key` falls back to OPENAI_API_KEY (direct) or AZURE_OPENAI_API_KEY
    (gateway).
    """

    id: str = Field(description="Unique instance identity")
    endpoint: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("endpoint", "url", "base_url"),
        description="Base URL (direct) or resource endpoint (gateway)",
    )
    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("api_key", "key"),
        description="Credential; env fallback applies when omitted",
    )
    provider: ProviderKind = Field(default=ProviderKind.DIRECT, description="direct | gateway")
    api_version: Optional[str] = Field(default=None, description="Required for gateway instances")
    models: List[str] = Field(default_factory=list, description="Deployed model names")
    enabled: bool = Field(default=True, description="Disabled instances are skipped entirely")
    timeout: float = Field(default=60.0, gt=0, description="Per-request timeout (seconds)")

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("instance id must not be empty")
        return v.strip()

    @field_validator("endpoint")
    @classmethod
    def _strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v.rstrip("/") or None

    @field_validator("provider", mode="before")
    @classmethod
    def _parse_provider(cls, v: Any) -> Any:
        if isinstance(v, str):
            return ProviderKind(v)
        return v

    @field_validator("models", mode="before")
    @classmethod
    def _split_models(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [m.strip() for m in v.split(",") if m.strip()]
        if isinstance(v, (list, tuple)):
            return [str(m).strip() for m in v if str(m).strip()]
        return v

    @model_validator(mode="after")
    def _check_provider_requirements(self) -> "InstanceConfig":
        if not self.enabled:
            return self
        if self.provider is ProviderKind.GATEWAY:
            if not self.api_version:
                raise ValueError(f"gateway instance '{self.id}' requires api_version")
            if not self.endpoint:
                raise ValueError(f"gateway instance '{self.id}' requires an endpoint")
        if not self.api_key:
            env_name = GATEWAY_API_KEY_ENV if self.provider is ProviderKind.GATEWAY else DIRECT_API_KEY_ENV
            self.api_key = os.environ.get(env_name) or None
            if not self.api_key:
                raise ValueError(f"instance '{self.id}' has no api_key and {env_name} is not set")
        return self


# =============================================================================
# SECTIONS
# =============================================================================


class RateLimitConfig(BaseModel):
    """Token-bucket admission control shared by all outgoing calls."""

    requests_per_second: int = Field(default=5, gt=0, description="Bucket capacity per 1s window")
    wait_interval_ms: int = Field(default=100, gt=0, description="Re-poll delay when the bucket is empty")


class RetryConfig(BaseModel):
    """Bounded retry with exponential backoff (base * 2**attempt)."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(default=10000, ge=0, description="Backoff base in milliseconds")


class PollingConfig(BaseModel):
    interval_seconds: float = Field(default=1.0, gt=0, description="Run status poll interval")


class AgentsSectionConfig(BaseModel):
    """Agent definition store settings."""

    definitions_path: Optional[Path] = Field(
        default=None, description="Directory of JSON agent definitions (one agent per file)"
    )
    default_response_timeout: float = Field(
        default=120.0, gt=0, description="Exchange timeout (seconds) for agents that set none"
    )
    auto_materialize: bool = Field(
        default=False, description="Create missing remote assistants on first use"
    )
    persist_native_ids: bool = Field(
        default=True, description="Write filled native id slots back to the definition file"
    )


class SanitizerConfig(BaseModel):
    """Agent used to rewrite content-rejected input before one retry."""

    enabled: bool = Field(default=False)
    agent_id: Optional[str] = Field(default=None, description="Agent that performs sanitization")

    @model_validator(mode="after")
    def _agent_required_when_enabled(self) -> "SanitizerConfig":
        if self.enabled and not self.agent_id:
            raise ValueError("sanitizer.enabled requires sanitizer.agent_id")
        return self


class LoggingSectionConfig(BaseModel):
    """Subset of configure_logging() settings; unknown keys are passed through."""

    model_config = {"extra": "allow"}

    console_enabled: bool = Field(default=False)
    console_level: str = Field(default="WARNING")
    file_enabled: bool = Field(default=False)
    file_level: str = Field(default="DEBUG")
    file_directory: str = Field(default="~/.local/share/llmfleet/logs")
    log_raw_payloads: bool = Field(default=False, description="Log raw transport payloads at DEBUG")


# =============================================================================
# ROOT
# =============================================================================


class FleetConfig(BaseModel):
    """
    Root configuration model for LLMFleet.

    Usage:
        >>> config = FleetConfig(instances=[{"id": "a", "api_key": "k", "models": ["gpt-4o"]}])
        >>> [i.id for i in config.enabled_instances]
        ['a']
    """

    instances: List[InstanceConfig] = Field(default_factory=list, description="Backend instances")
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    agents: AgentsSectionConfig = Field(default_factory=AgentsSectionConfig)
    sanitizer: SanitizerConfig = Field(default_factory=SanitizerConfig)
    logging: LoggingSectionConfig = Field(default_factory=LoggingSectionConfig)

    @field_validator("instances", mode="before")
    @classmethod
    def _instances_from_table(cls, v: Any) -> Any:
        # TOML users may write [instances.<id>] tables instead of [[instances]].
        if isinstance(v, dict):
            return [{"id": key, **(value or {})} for key, value in v.items()]
        return v

    @model_validator(mode="after")
    def _unique_enabled_ids(self) -> "FleetConfig":
        seen: Dict[str, int] = {}
        for inst in self.enabled_instances:
            if inst.id in seen:
                raise ValueError(f"duplicate instance id '{inst.id}'")
            seen[inst.id] = 1
        return self

    @property
    def enabled_instances(self) -> List[InstanceConfig]:
        """Enabled instances in declaration order. Their positions are the instance indices."""
        return [inst for inst in self.instances if inst.enabled]


__all__ = [
    "InstanceConfig",
    "RateLimitConfig",
    "RetryConfig",
    "PollingConfig",
    "AgentsSectionConfig",
    "SanitizerConfig",
    "LoggingSectionConfig",
    "FleetConfig",
]
