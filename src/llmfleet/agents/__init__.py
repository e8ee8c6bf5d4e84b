# src/llmfleet/agents/__init__.py
"""
Agent store and the exchange orchestrator.
"""

from .manager import AgentManager
from .orchestrator import RequestOrchestrator

__all__ = ["AgentManager", "RequestOrchestrator"]
