# src/llmfleet/agents/orchestrator.py
"""
End-to-end flow for one logical exchange with an agent.

    SELECT_INSTANCE -> ENSURE_RESOURCE -> SUBMIT -> POLL -> EXTRACT -> DONE

Each attempt of the flow runs inside `RetryExecutor.execute()`. Without a
resource handle every attempt re-selects an instance through the router, so
a retry may fail over to another instance. With a handle the instance is
pinned by the handle's prefix for every attempt.

The orchestrator also sequences the stateless operations (raw completions,
image generation) and the explicit resource and batch operations, all routed
through the same rate limiter and retry policy.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from ..exceptions import (
    ConfigError,
    ExchangeTimeoutError,
    NativeIdMissingError,
    RunFailedError,
    TransientRemoteError,
)
from ..models import Agent, ExchangeResult, ResourceKind, RunStatus
from ..providers.registry import Instance, InstanceRegistry
from ..resilience.rate_limiter import RateLimiter
from ..resilience.retry import RetryExecutor
from ..routing.affinity import ResourceAffinityCodec
from ..routing.model_router import ModelRouter
from ..structured.schema_generator import SchemaGenerator
from .manager import AgentManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

TERMINAL_BATCH_STATUSES = frozenset({"completed", "failed", "cancelled", "expired"})


class RequestOrchestrator:
    """
    Runs exchanges and stateless calls across the instance pool.

    Args:
        registry: Instance registry.
        router: Per-model round-robin router over `registry`.
        codec: Resource handle codec sized to `registry`.
        agents: Agent store; used for native id lookup and lazy materialization.
        rate_limiter: Shared limiter; one token per remote call.
        retry_executor: Retry policy holder.
        poll_interval: Seconds between run status checks.
        default_response_timeout: Timeout for agents that set none.
        auto_materialize: Create missing remote assistants on first use.
        sanitizer_agent_id: Agent used for the content-rejected branch, or None.
        sleep: Async sleep, injectable for tests.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        router: ModelRouter,
        codec: ResourceAffinityCodec,
        agents: AgentManager,
        rate_limiter: RateLimiter,
        retry_executor: RetryExecutor,
        poll_interval: float = 1.0,
        default_response_timeout: float = 120.0,
        auto_materialize: bool = False,
        sanitizer_agent_id: Optional[str] = None,
        schema_generator: Optional[SchemaGenerator] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.router = router
        self.codec = codec
        self.agents = agents
        self.rate_limiter = rate_limiter
        self.retry_executor = retry_executor
        self.poll_interval = poll_interval
        self.default_response_timeout = default_response_timeout
        self.auto_materialize = auto_materialize
        self.sanitizer_agent_id = sanitizer_agent_id
        self.schema_generator = schema_generator or agents.schema_generator
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

    # --- Exchanges ---

    async def run_exchange(
        self,
        agent: Union[str, Agent],
        user_input: str,
        resource_handle: Optional[str] = None,
        sanitize: bool = True,
    ) -> ExchangeResult:
        """
        Sends `user_input` to an agent and waits for its reply.

        Args:
            agent: Agent id or Agent.
            user_input: The user message.
            resource_handle: Handle of an existing thread to continue, or None for a new one.
            sanitize: Allow the sanitize-and-retry branch for this exchange.

        Returns:
            ExchangeResult with the reply text and the thread handle for follow-up turns.

        Raises:
            ConfigError: Unknown agent or model, or a missing native id.
            ContentRejectedError: Input rejected and not recoverable by sanitization.
            RetriesExhaustedError: Transient failures outlasted the retry policy.
        """
        if isinstance(agent, str):
            agent = self.agents.get(agent)
        attempts = 0

        async def attempt(current_input: str) -> ExchangeResult:
            nonlocal attempts
            attempts += 1
            text, handle, index = await self._exchange_once(agent, current_input, resource_handle)
            return ExchangeResult(text=text, resource_handle=handle, instance_index=index, attempts=attempts)

        return await self.retry_executor.execute(
            attempt,
            user_input,
            sanitizer=self._sanitizer_for(agent.id),
            sanitize=sanitize,
            agent_id=agent.id,
            model=agent.model,
        )

    async def _exchange_once(
        self, agent: Agent, user_input: str, resource_handle: Optional[str]
    ) -> Tuple[str, str, int]:
        # SELECT_INSTANCE
        if resource_handle:
            index, thread_id = self.codec.decode(resource_handle)
            instance = self.registry.get(index)
            handle = resource_handle
            logger.debug(f"Exchange for agent '{agent.id}' pinned to instance {index} by handle")
        else:
            index = self.router.select_instance(agent.model)
            instance = self.registry.get(index)
            # ENSURE_RESOURCE
            thread_id = await self._call(instance.client.create_thread)
            handle = self.codec.encode(index, thread_id)
            logger.debug(f"Created thread on instance {index} for agent '{agent.id}'")

        # SUBMIT
        assistant_id = await self._native_id(agent, index, instance)
        await self._call(instance.client.append_message, thread_id, user_input)
        run = await self._call(instance.client.start_run, thread_id, assistant_id, agent.temperature)

        # POLL
        timeout = agent.response_timeout or self.default_response_timeout
        status = await self._poll_run(instance, thread_id, run.run_id, run.status, timeout)

        # EXTRACT
        if status is not RunStatus.COMPLETED:
            raise RunFailedError(instance.id, status.value)
        messages = await self._call(instance.client.list_messages, thread_id, 1)
        if not messages:
            raise TransientRemoteError(instance.id, f"Run completed but thread '{thread_id}' has no messages")
        return messages[0].text, handle, index

    async def _native_id(self, agent: Agent, index: int, instance: Instance) -> str:
        native_id = agent.native_id_for(index)
        if native_id:
            return native_id
        if self.auto_materialize:
            logger.info(f"Materializing agent '{agent.id}' on instance {index} ('{instance.id}')")
            return await self.agents.ensure_native_id(agent, index)
        raise NativeIdMissingError(agent.id, index, instance.id)

    async def _poll_run(
        self, instance: Instance, thread_id: str, run_id: str, status: RunStatus, timeout: float
    ) -> RunStatus:
        started = self._clock()
        while not status.is_terminal:
            if self._clock() - started >= timeout:
                logger.error(f"Run '{run_id}' on instance '{instance.id}' timed out after {timeout}s (status {status.value})")
                raise ExchangeTimeoutError(instance.id, timeout, status.value)
            await self._sleep(self.poll_interval)
            status = await self._call(instance.client.get_run_status, thread_id, run_id)
        return status

    def _sanitizer_for(self, agent_id: str) -> Optional[Callable[[str], Awaitable[str]]]:
        if not self.sanitizer_agent_id or agent_id == self.sanitizer_agent_id:
            return None

        async def sanitize(text: str) -> str:
            result = await self.run_exchange(self.sanitizer_agent_id, text, sanitize=False)
            return result.text

        return sanitize

    async def _call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self.rate_limiter.acquire()
        return await fn(*args, **kwargs)

    # --- Resources ---

    def _pinned(self, handle: str) -> Tuple[Instance, int, str]:
        index, native_id = self.codec.decode(handle)
        return self.registry.get(index), index, native_id

    async def create_resource(
        self,
        model: str,
        kind: ResourceKind = ResourceKind.THREAD,
        name: Optional[str] = None,
        file_ids: Optional[List[str]] = None,
    ) -> str:
        """Creates a thread or vector store on an instance serving `model` and returns its handle."""
        if kind is ResourceKind.BATCH:
            raise ConfigError("Batches are created with create_batch().")

        async def attempt(_: str) -> str:
            index = self.router.select_instance(model)
            instance = self.registry.get(index)
            if kind is ResourceKind.VECTOR_STORE:
                native_id = await self._call(instance.client.create_vector_store, name, file_ids)
            else:
                native_id = await self._call(instance.client.create_thread)
            logger.debug(f"Created {kind.value} '{native_id}' on instance {index}")
            return self.codec.encode(index, native_id)

        return await self.retry_executor.execute(attempt, model=model)

    async def delete_resource(self, handle: str, kind: ResourceKind = ResourceKind.THREAD) -> bool:
        """Deletes a thread or vector store. Returns False (and logs) when the remote delete fails."""
        try:
            instance, index, native_id = self._pinned(handle)
        except ConfigError as e:
            logger.error(f"Cannot delete {kind.value} '{handle}': {e}")
            return False
        if kind is ResourceKind.VECTOR_STORE:
            deleted = await self._call(instance.client.delete_vector_store, native_id)
        elif kind is ResourceKind.THREAD:
            deleted = await self._call(instance.client.delete_thread, native_id)
        else:
            logger.error(f"Resources of kind '{kind.value}' cannot be deleted")
            return False
        if deleted:
            logger.debug(f"Deleted {kind.value} '{native_id}' on instance {index}")
        return deleted

    # --- Stateless calls ---

    async def run_stateless_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        result_type: Any = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Runs a raw chat completion on an instance serving `model`.

        `result_type` may be a registered name or a type; it becomes the
        request's structured-output `response_format`.
        """
        response_format = self._response_format(result_type)

        async def attempt(_: str) -> str:
            index = self.router.select_instance(model)
            instance = self.registry.get(index)
            return await self._call(
                instance.client.chat_completion,
                model,
                messages,
                temperature=temperature,
                response_format=response_format,
            )

        return await self.retry_executor.execute(attempt, model=model)

    def _response_format(self, result_type: Any) -> Optional[Dict[str, Any]]:
        if result_type is None:
            return None
        if isinstance(result_type, str):
            tp = self.agents.result_types.get(result_type)
            if tp is None:
                logger.warning(f"Result type '{result_type}' is not registered; using JSON mode")
            return self.schema_generator.response_format(result_type, tp)
        return self.schema_generator.response_format(getattr(result_type, "__name__", None), result_type)

    async def generate_image(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        quality: Optional[str] = None,
        with_sanitization: bool = True,
    ) -> str:
        """Generates one image and returns its URL; rejected prompts go through the sanitizer once."""

        async def attempt(current_prompt: str) -> str:
            index = self.router.select_instance(model)
            instance = self.registry.get(index)
            return await self._call(instance.client.generate_image, current_prompt, model, size, quality)

        return await self.retry_executor.execute(
            attempt,
            prompt,
            sanitizer=self._sanitizer_for(""),
            sanitize=with_sanitization,
            model=model,
        )

    # --- Batches ---

    async def create_batch(
        self,
        input_file_id: str,
        endpoint: str = "/v1/chat/completions",
        metadata: Optional[Dict[str, str]] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Creates a batch on an instance serving `model` (instance 0 when no model is given)."""

        async def attempt(_: str) -> Dict[str, Any]:
            index = self.router.select_instance(model) if model else 0
            instance = self.registry.get(index)
            batch = await self._call(instance.client.create_batch, input_file_id, endpoint, metadata)
            return self._with_handle(batch, index)

        return await self.retry_executor.execute(attempt, model=model)

    async def get_batch(self, handle: str) -> Dict[str, Any]:
        instance, index, batch_id = self._pinned(handle)
        batch = await self.retry_executor.execute(
            lambda _: self._call(instance.client.get_batch, batch_id)
        )
        return self._with_handle(batch, index)

    async def cancel_batch(self, handle: str) -> Dict[str, Any]:
        instance, index, batch_id = self._pinned(handle)
        batch = await self.retry_executor.execute(
            lambda _: self._call(instance.client.cancel_batch, batch_id)
        )
        return self._with_handle(batch, index)

    async def list_batches(self, limit: int = 20, instance_index: Optional[int] = None) -> List[Dict[str, Any]]:
        """Lists batches on one instance, or on every instance when `instance_index` is None."""
        indices = [instance_index] if instance_index is not None else list(range(self.registry.size))
        batches: List[Dict[str, Any]] = []
        for index in indices:
            instance = self.registry.get(index)
            page = await self.retry_executor.execute(
                lambda _, inst=instance: self._call(inst.client.list_batches, limit)
            )
            batches.extend(self._with_handle(batch, index) for batch in page)
        return batches

    async def poll_batch_until_complete(
        self,
        handle: str,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Polls a batch until it reaches a terminal status. Raises ExchangeTimeoutError on timeout."""
        interval = poll_interval or self.poll_interval
        started = self._clock()
        while True:
            batch = await self.get_batch(handle)
            status = str(batch.get("status", "")).lower()
            if status in TERMINAL_BATCH_STATUSES:
                logger.info(f"Batch '{batch.get('id')}' finished with status '{status}'")
                return batch
            if timeout is not None and self._clock() - started >= timeout:
                instance, _, _ = self._pinned(handle)
                raise ExchangeTimeoutError(instance.id, timeout, status)
            await self._sleep(interval)

    def _with_handle(self, batch: Dict[str, Any], index: int) -> Dict[str, Any]:
        result = dict(batch)
        if result.get("id"):
            result["handle"] = self.codec.encode(index, result["id"])
        return result
