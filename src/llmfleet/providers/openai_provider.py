# src/llmfleet/providers/openai_provider.py
"""
OpenAI-compatible transport for the LLMFleet library.

One `OpenAIProvider` serves exactly one configured instance. Direct
instances talk to the vendor endpoint through `AsyncOpenAI`; gateway
instances (hosted deployments that need an API version) go through
`AsyncAzureOpenAI`, which rewrites the deployment path for every call.

SDK exceptions are translated into the LLMFleet hierarchy so the retry
layer can classify them without knowing about the SDK.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from ..exceptions import ConfigError, ContentRejectedError, ProviderError, TransientRemoteError
from ..models import ProviderKind, RunHandle, RunStatus, ThreadMessage
from ..resilience.retry import CONTENT_REJECTED_MARKERS
from .base import BaseProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 60.0


def _error_text(error: OpenAIError) -> str:
    message = getattr(error, "message", None) or str(error)
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        code = body.get("code")
        if code is None and isinstance(body.get("error"), dict):
            code = body["error"].get("code")
        if code and str(code) not in message:
            message = f"{message} (code: {code})"
    return message


class OpenAIProvider(BaseProvider):
    """
    Transport for one OpenAI-compatible instance.

    Config keys:
        api_key: Credential for the instance (required).
        endpoint: Base URL (direct) or resource endpoint (gateway).
        kind: "direct" or "gateway" (the vendor names "openai"/"azure" are accepted).
        api_version: Required for gateway instances.
        timeout: Per-request timeout in seconds (default 60).
        _instance_name: Instance id, used in error messages and logs.
    """
    _client: Optional[AsyncOpenAI] = None

    def __init__(self, config: Dict[str, Any], log_raw_payloads: bool = False):
        super().__init__(config, log_raw_payloads)
        self.api_key = config.get("api_key")
        self.endpoint = config.get("endpoint")
        self.kind = ProviderKind(config.get("kind", ProviderKind.DIRECT))
        self.api_version = config.get("api_version")
        self.timeout = float(config.get("timeout", DEFAULT_TIMEOUT_SECONDS))

        if not self.api_key:
            raise ConfigError(f"Instance '{self.get_name()}' has no API key configured.")
        if self.kind is ProviderKind.GATEWAY and not self.api_version:
            raise ConfigError(f"Gateway instance '{self.get_name()}' requires an api_version.")

        try:
            if self.kind is ProviderKind.GATEWAY:
                self._client = AsyncAzureOpenAI(
                    api_key=self.api_key,
                    azure_endpoint=self.endpoint,
                    api_version=self.api_version,
                    timeout=self.timeout,
                )
            else:
                self._client = AsyncOpenAI(
                    api_key=self.api_key,
                    base_url=self.endpoint,
                    timeout=self.timeout,
                )
            logger.debug(f"{self.kind.value} client initialized for instance '{self.get_name()}'.")
        except Exception as e:
            logger.error(f"Failed to initialize client for instance '{self.get_name()}': {e}", exc_info=True)
            raise ConfigError(f"Client initialization failed for instance '{self.get_name()}': {e}")

    def get_name(self) -> str:
        return self._provider_instance_name or "openai"

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            raise ProviderError(self.get_name(), "Client is closed.")
        return self._client

    def _translate_error(self, operation: str, error: Exception) -> Exception:
        """Maps SDK errors onto the LLMFleet hierarchy."""
        name = self.get_name()
        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return ConfigError(f"Instance '{name}' rejected the credentials during {operation}: {_error_text(error)}")
        if isinstance(error, openai.NotFoundError):
            return ConfigError(f"Instance '{name}' could not find the resource for {operation}: {_error_text(error)}")
        if isinstance(error, openai.BadRequestError):
            text = _error_text(error)
            if any(marker in text.lower() for marker in CONTENT_REJECTED_MARKERS):
                return ContentRejectedError(name, text)
            return TransientRemoteError(name, f"{operation} failed (Status {error.status_code}): {text}")
        if isinstance(error, openai.APITimeoutError):
            return TransientRemoteError(name, f"{operation} timed out after {self.timeout}s.")
        if isinstance(error, openai.APIConnectionError):
            return TransientRemoteError(name, f"{operation} connection error: {_error_text(error)}")
        if isinstance(error, openai.APIStatusError):
            return TransientRemoteError(name, f"{operation} failed (Status {error.status_code}): {_error_text(error)}")
        if isinstance(error, OpenAIError):
            return TransientRemoteError(name, f"{operation} failed: {_error_text(error)}")
        if isinstance(error, asyncio.TimeoutError):
            return TransientRemoteError(name, f"{operation} timed out after {self.timeout}s.")
        return TransientRemoteError(name, f"Unexpected error during {operation}: {error}")

    async def _invoke(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except (ConfigError, ProviderError):
            raise
        except Exception as e:
            translated = self._translate_error(operation, e)
            logger.error(f"Instance '{self.get_name()}' {operation} error: {translated}")
            raise translated from e

    def _log_payload(self, label: str, payload: Any) -> None:
        if self.log_raw_payloads_enabled and logger.isEnabledFor(logging.DEBUG):
            try:
                if hasattr(payload, "model_dump"):
                    payload = payload.model_dump(exclude_none=True)
                logger.debug(f"RAW {self.get_name()} {label}: {json.dumps(payload, indent=2, default=str)}")
            except Exception as e_log:
                logger.warning(f"Failed to serialize raw {label} for logging: {type(e_log).__name__} - {str(e_log)[:100]}")

    # --- Conversation threads ---

    async def create_thread(self) -> str:
        thread = await self._invoke("create_thread", lambda: self.client.beta.threads.create())
        return thread.id

    async def append_message(self, thread_id: str, content: str, role: str = "user") -> str:
        self._log_payload("append_message request", {"thread_id": thread_id, "role": role, "content": content})
        message = await self._invoke(
            "append_message",
            lambda: self.client.beta.threads.messages.create(thread_id, role=role, content=content),
        )
        return message.id

    async def start_run(self, thread_id: str, assistant_id: str, temperature: Optional[float] = None) -> RunHandle:
        params: Dict[str, Any] = {"thread_id": thread_id, "assistant_id": assistant_id}
        if temperature is not None:
            params["temperature"] = temperature
        run = await self._invoke("start_run", lambda: self.client.beta.threads.runs.create(**params))
        return RunHandle(run_id=run.id, thread_id=thread_id, status=RunStatus(run.status))

    async def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        run = await self._invoke(
            "get_run_status",
            lambda: self.client.beta.threads.runs.retrieve(run_id, thread_id=thread_id),
        )
        return RunStatus(run.status)

    async def list_messages(self, thread_id: str, limit: int = 20) -> List[ThreadMessage]:
        page = await self._invoke(
            "list_messages",
            lambda: self.client.beta.threads.messages.list(thread_id, order="desc", limit=limit),
        )
        self._log_payload("list_messages response", page)
        messages: List[ThreadMessage] = []
        for item in page.data:
            fragments = [
                part.text.value
                for part in (item.content or [])
                if getattr(part, "type", None) == "text" and getattr(part, "text", None) is not None
            ]
            messages.append(ThreadMessage(id=item.id, role=item.role, text_fragments=fragments))
        return messages

    async def delete_thread(self, thread_id: str) -> bool:
        try:
            result = await self._invoke("delete_thread", lambda: self.client.beta.threads.delete(thread_id))
            return bool(getattr(result, "deleted", True))
        except (ConfigError, ProviderError) as e:
            logger.warning(f"Could not delete thread '{thread_id}' on '{self.get_name()}': {e}")
            return False

    # --- Vector stores ---

    async def create_vector_store(self, name: Optional[str] = None, file_ids: Optional[List[str]] = None) -> str:
        params: Dict[str, Any] = {}
        if name:
            params["name"] = name
        if file_ids:
            params["file_ids"] = list(file_ids)
        store = await self._invoke("create_vector_store", lambda: self.client.vector_stores.create(**params))
        return store.id

    async def delete_vector_store(self, vector_store_id: str) -> bool:
        try:
            result = await self._invoke(
                "delete_vector_store", lambda: self.client.vector_stores.delete(vector_store_id)
            )
            return bool(getattr(result, "deleted", True))
        except (ConfigError, ProviderError) as e:
            logger.warning(f"Could not delete vector store '{vector_store_id}' on '{self.get_name()}': {e}")
            return False

    # --- Assistants ---

    @staticmethod
    def _assistant_params(
        model: str,
        name: Optional[str],
        instructions: Optional[str],
        temperature: Optional[float],
        response_format: Optional[Dict[str, Any]],
        retrieval: bool,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"model": model}
        if name is not None:
            params["name"] = name
        if instructions is not None:
            params["instructions"] = instructions
        if temperature is not None:
            params["temperature"] = temperature
        if response_format is not None:
            params["response_format"] = response_format
        if retrieval:
            params["tools"] = [{"type": "file_search"}]
        return params

    async def create_assistant(
        self,
        model: str,
        name: Optional[str] = None,
        instructions: Optional[str] = None,
        temperature: Optional[float] = None,
        response_format: Optional[Dict[str, Any]] = None,
        retrieval: bool = False,
    ) -> str:
        params = self._assistant_params(model, name, instructions, temperature, response_format, retrieval)
        self._log_payload("create_assistant request", params)
        assistant = await self._invoke("create_assistant", lambda: self.client.beta.assistants.create(**params))
        logger.info(f"Created assistant '{assistant.id}' for model '{model}' on instance '{self.get_name()}'")
        return assistant.id

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
        params = self._assistant_params(model, name, instructions, temperature, response_format, retrieval)
        self._log_payload("update_assistant request", params)
        assistant = await self._invoke(
            "update_assistant", lambda: self.client.beta.assistants.update(assistant_id, **params)
        )
        return assistant.id

    # --- Stateless calls ---

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        response_format: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> str:
        params: Dict[str, Any] = {"model": model, "messages": messages, **kwargs}
        if temperature is not None:
            params["temperature"] = temperature
        if response_format is not None:
            params["response_format"] = response_format
        self._log_payload("chat_completion request", params)
        completion = await self._invoke("chat_completion", lambda: self.client.chat.completions.create(**params))
        self._log_payload("chat_completion response", completion)
        if not completion.choices:
            raise TransientRemoteError(self.get_name(), "chat_completion returned no choices.")
        return completion.choices[0].message.content or ""

    async def generate_image(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        quality: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"model": model, "prompt": prompt, "size": size, "n": 1}
        if quality is not None:
            params["quality"] = quality
        response = await self._invoke("generate_image", lambda: self.client.images.generate(**params))
        if not response.data or not response.data[0].url:
            raise TransientRemoteError(self.get_name(), "generate_image returned no image URL.")
        return response.data[0].url

    # --- Batches ---

    async def create_batch(
        self,
        input_file_id: str,
        endpoint: str = "/v1/chat/completions",
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "input_file_id": input_file_id,
            "endpoint": endpoint,
            "completion_window": "24h",
        }
        if metadata:
            params["metadata"] = metadata
        batch = await self._invoke("create_batch", lambda: self.client.batches.create(**params))
        return batch.model_dump()

    async def get_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self._invoke("get_batch", lambda: self.client.batches.retrieve(batch_id))
        return batch.model_dump()

    async def cancel_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self._invoke("cancel_batch", lambda: self.client.batches.cancel(batch_id))
        return batch.model_dump()

    async def list_batches(self, limit: int = 20, after: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        page = await self._invoke("list_batches", lambda: self.client.batches.list(**params))
        return [batch.model_dump() for batch in page.data]

    async def close(self) -> None:
        """Closes the underlying client session if applicable."""
        if self._client:
            try:
                await self._client.close()
                logger.info(f"Client for instance '{self.get_name()}' closed.")
            except RuntimeError as e:
                if "Event loop is closed" in str(e):
                    logger.warning(f"Client close for '{self.get_name()}' failed as event loop is already closed: {e}")
                else:
                    logger.error(f"RuntimeError closing client for '{self.get_name()}': {e}", exc_info=True)
            except Exception as e:
                logger.error(f"Error closing client for '{self.get_name()}': {e}", exc_info=True)
            finally:
                self._client = None
