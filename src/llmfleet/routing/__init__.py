# src/llmfleet/routing/__init__.py
"""
Instance selection and resource affinity.
"""

from .affinity import ResourceAffinityCodec
from .model_router import ModelRouter

__all__ = ["ModelRouter", "ResourceAffinityCodec"]
