# src/llmfleet/providers/base.py
"""
Abstract Base Class for backend transport clients.

This module defines the narrow interface the routing core sequences calls
through. A concrete provider wraps one configured backend instance (one
endpoint/credential pair) and never makes routing decisions itself.
"""

import abc
from typing import Any, Dict, List, Optional

from ..models import RunHandle, RunStatus, ThreadMessage


class BaseProvider(abc.ABC):
    """
    Abstract Base Class for backend transport clients.

    Operations fall in three groups:
    - Stateful conversation objects: threads, messages, runs, vector stores.
    - Remote assistants (the per-instance materialization of an agent).
    - Stateless calls: chat completion, image generation, batches.

    All operations raise exceptions from `llmfleet.exceptions` so the retry
    layer can classify them (ConfigError, TransientRemoteError,
    ContentRejectedError).
    """
    log_raw_payloads_enabled: bool

    @abc.abstractmethod
    def __init__(self, config: Dict[str, Any], log_raw_payloads: bool = False):
        """
        Initialize the provider with its instance configuration.

        Args:
            config: Instance settings (e.g., api_key, endpoint, api_version, timeout).
            log_raw_payloads: Whether raw request/response payloads are logged at DEBUG.
        """
        self.log_raw_payloads_enabled = log_raw_payloads
        self._provider_instance_name: Optional[str] = config.get("_instance_name")

    @abc.abstractmethod
    def get_name(self) -> str:
        """Return the instance name this provider serves."""
        pass

    # --- Conversation threads ---

    @abc.abstractmethod
    async def create_thread(self) -> str:
        """Create an empty conversation thread and return its native id."""
        pass

    @abc.abstractmethod
    async def append_message(self, thread_id: str, content: str, role: str = "user") -> str:
        """Append a message to a thread and return the message id."""
        pass

    @abc.abstractmethod
    async def start_run(self, thread_id: str, assistant_id: str, temperature: Optional[float] = None) -> RunHandle:
        """Start an asynchronous run of `assistant_id` on `thread_id`."""
        pass

    @abc.abstractmethod
    async def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        """Fetch the current status of a run."""
        pass

    @abc.abstractmethod
    async def list_messages(self, thread_id: str, limit: int = 20) -> List[ThreadMessage]:
        """List thread messages, newest first."""
        pass

    @abc.abstractmethod
    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread. Returns True when the remote side confirmed deletion."""
        pass

    # --- Vector stores ---

    @abc.abstractmethod
    async def create_vector_store(self, name: Optional[str] = None, file_ids: Optional[List[str]] = None) -> str:
        """Create a vector store and return its native id."""
        pass

    @abc.abstractmethod
    async def delete_vector_store(self, vector_store_id: str) -> bool:
        """Delete a vector store."""
        pass

    # --- Assistants ---

    @abc.abstractmethod
    async def create_assistant(
        self,
        model: str,
        name: Optional[str] = None,
        instructions: Optional[str] = None,
        temperature: Optional[float] = None,
        response_format: Optional[Dict[str, Any]] = None,
        retrieval: bool = False,
    ) -> str:
        """Create a remote assistant and return its native id."""
        pass

    @abc.abstractmethod
    async def update_assistant(
        self,
        assistant_id: str,
        model: str,
        name: Optional[str] = None,
        instructions: Optional[str] = None,
        temperature: Optional[float] = None,
        response_format: Optional[Dict[str, Any]] = None,
        retrieval: bool = False,
    ) -> str:
        """Update an existing remote assistant and return its native id."""
        pass

    # --- Stateless calls ---

    @abc.abstractmethod
    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        response_format: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> str:
        """Run a raw chat completion and return the first choice's text."""
        pass

    @abc.abstractmethod
    async def generate_image(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        quality: Optional[str] = None,
    ) -> str:
        """Generate one image and return its URL."""
        pass

    # --- Batches ---

    @abc.abstractmethod
    async def create_batch(
        self,
        input_file_id: str,
        endpoint: str = "/v1/chat/completions",
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Create a batch job and return its description (must include 'id' and 'status')."""
        pass

    @abc.abstractmethod
    async def get_batch(self, batch_id: str) -> Dict[str, Any]:
        """Fetch a batch job description."""
        pass

    @abc.abstractmethod
    async def cancel_batch(self, batch_id: str) -> Dict[str, Any]:
        """Cancel an in-progress batch."""
        pass

    @abc.abstractmethod
    async def list_batches(self, limit: int = 20, after: Optional[str] = None) -> List[Dict[str, Any]]:
        """List batch jobs."""
        pass

    async def close(self) -> None:
         """
         Clean up any resources used by the provider, such as network sessions.
         Providers that do not need explicit cleanup can rely on this default.
         """
         pass
