# src/llmfleet/exceptions.py
"""
Custom exceptions for the LLMFleet library.

This module defines a hierarchy of custom exception classes so callers can
tell apart failures that must never be retried (configuration problems),
failures the retry layer absorbs (transient remote faults), and the
content-rejected branch that triggers sanitize-and-retry.
"""

from typing import List, Optional


class LLMFleetError(Exception):
    """Base class for all LLMFleet specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in LLMFleet."):
        super().__init__(message)

class ConfigError(LLMFleetError):
    """Raised for configuration errors. Never retried."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class ModelNotServedError(ConfigError):
    """Raised when no registered instance declares the requested model."""
    def __init__(self, model: str = "Unknown", available_models: Optional[List[str]] = None):
        self.model = model
        self.available_models = sorted(available_models or [])
        super().__init__(
            f"Model '{model}' is not served by any configured instance. "
            f"Available models: {self.available_models}"
        )

class AgentNotFoundError(ConfigError):
    """Raised when an agent id is not present in the agent store."""
    def __init__(self, agent_id: str = "Unknown"):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: '{agent_id}'")

class NativeIdMissingError(ConfigError):
    """
    Raised when an agent has no remote assistant identifier for the instance
    that was selected to serve it.
    """
    def __init__(self, agent_id: str = "Unknown", instance_index: int = 0, instance_id: str = "Unknown"):
        self.agent_id = agent_id
        self.instance_index = instance_index
        self.instance_id = instance_id
        super().__init__(
            f"Agent '{agent_id}' has no native assistant id for instance "
            f"{instance_index} ('{instance_id}'). Materialize the agent first."
        )

class ProviderError(LLMFleetError):
    """Raised for errors originating from a backend instance (API errors, connection issues)."""
    def __init__(self, provider_name: str = "Unknown", message: str = "Provider error."):
        self.provider_name = provider_name
        super().__init__(f"Error with provider '{provider_name}': {message}")

class TransientRemoteError(ProviderError):
    """Raised for remote failures that are worth retrying (timeouts, 5xx, network faults)."""
    def __init__(self, provider_name: str = "Unknown", message: str = "Transient remote error."):
        super().__init__(provider_name, message)

class ExchangeTimeoutError(TransientRemoteError):
    """Raised when a run does not reach a terminal status within the response timeout."""
    def __init__(self, provider_name: str = "Unknown", timeout_seconds: float = 0.0, last_status: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
        super().__init__(
            provider_name,
            f"Request timeout after {timeout_seconds} seconds (last status: {last_status})"
        )

class RunFailedError(TransientRemoteError):
    """Raised when a run reaches a terminal status other than 'completed'."""
    def __init__(self, provider_name: str = "Unknown", status: str = "failed", detail: Optional[str] = None):
        self.status = status
        message = f"Run failed with status: {status}"
        if detail:
            message += f" ({detail})"
        super().__init__(provider_name, message)

class ContentRejectedError(ProviderError):
    """Raised when the remote service refuses the input on content-policy grounds."""
    def __init__(self, provider_name: str = "Unknown", message: str = "Content rejected by the safety system."):
        super().__init__(provider_name, message)

class RetriesExhaustedError(LLMFleetError):
    """
    Raised when a unit of work keeps failing after every allowed retry.
    The last underlying error is kept in `last_error` and chained as `__cause__`.
    """
    def __init__(
        self,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
        agent_id: Optional[str] = None,
        model: Optional[str] = None,
        last_status: Optional[str] = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        self.agent_id = agent_id
        self.model = model
        self.last_status = last_status
        context = []
        if agent_id:
            context.append(f"agent='{agent_id}'")
        if model:
            context.append(f"model='{model}'")
        if last_status:
            context.append(f"last_status='{last_status}'")
        suffix = f" [{', '.join(context)}]" if context else ""
        super().__init__(f"Request failed after {attempts} attempts{suffix}: {last_error}")

class SchemaGenerationError(LLMFleetError):
    """Raised internally when a result type cannot be described. Never surfaced to callers."""
    def __init__(self, type_name: str = "Unknown", message: str = "Schema generation failed."):
        self.type_name = type_name
        super().__init__(f"{message} Type: '{type_name}'")
