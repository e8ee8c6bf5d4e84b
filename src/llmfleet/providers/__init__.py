# src/llmfleet/providers/__init__.py
"""
Backend transport clients and the instance registry.
"""

from .base import BaseProvider
from .openai_provider import OpenAIProvider
from .registry import Instance, InstanceRegistry, ProviderFactory, default_provider_factory

__all__ = [
    "BaseProvider",
    "OpenAIProvider",
    "Instance",
    "InstanceRegistry",
    "ProviderFactory",
    "default_provider_factory",
]
