# src/llmfleet/api.py
"""
Core API Facade for the LLMFleet library.
"""

import logging
import pathlib
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

from .agents.manager import AgentManager
from .agents.orchestrator import RequestOrchestrator
from .config.loader import load_fleet_config
from .config.models import FleetConfig
from .exceptions import ConfigError
from .logging_config import configure_logging
from .models import Agent, ExchangeResult, ResourceKind
from .providers.registry import InstanceRegistry, ProviderFactory
from .resilience.rate_limiter import RateLimiter
from .resilience.retry import RetryExecutor, RetryPolicy
from .routing.affinity import ResourceAffinityCodec
from .routing.model_router import ModelRouter
from .structured.response import map_response, response_ok
from .structured.schema_generator import ResultTypeRegistry, SchemaGenerator, default_result_types

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LLMFleet:
    """
    Main entry point: agents and completions routed over a pool of backend instances.

    Initialized asynchronously with `LLMFleet.create()`; use `close()` or
    `async with` to release every transport client.
    """
    config: FleetConfig
    registry: InstanceRegistry
    router: ModelRouter
    codec: ResourceAffinityCodec
    rate_limiter: RateLimiter
    retry_executor: RetryExecutor
    agents: AgentManager
    orchestrator: RequestOrchestrator
    schema_generator: SchemaGenerator
    result_types: ResultTypeRegistry

    def __init__(self):
        """
        Private constructor. Use `LLMFleet.create()` for initialization.
        """
        self._closed = False

    @classmethod
    async def create(
        cls,
        config_path: Optional[Union[str, pathlib.Path]] = None,
        config_dict: Optional[Dict[str, Any]] = None,
        overrides: Optional[Dict[str, Any]] = None,
        provider_factory: Optional[ProviderFactory] = None,
        result_types: Optional[ResultTypeRegistry] = None,
        setup_logging: bool = False,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "LLMFleet":
        """
        Asynchronously creates and initializes an LLMFleet instance.

        Args:
            config_path: TOML configuration file.
            config_dict: Configuration dictionary merged over the file.
            overrides: Runtime overrides, applied last.
            provider_factory: Builds a transport per instance (defaults to the OpenAI SDK).
            result_types: Result-type registry (defaults to the module-level one).
            setup_logging: Install handlers from the `[logging]` section.
            sleep: Async sleep used by the rate limiter, retries and polling.
            clock: Monotonic clock used by the rate limiter and polling.

        Raises:
            ConfigError: Invalid configuration or an empty instance pool.
        """
        instance = cls()
        config = load_fleet_config(config_path=config_path, config_dict=config_dict, overrides=overrides)
        await instance._initialize(config, provider_factory, result_types, setup_logging, sleep, clock)
        return instance

    async def _initialize(
        self,
        config: FleetConfig,
        provider_factory: Optional[ProviderFactory],
        result_types: Optional[ResultTypeRegistry],
        setup_logging: bool,
        sleep: Optional[Callable[[float], Awaitable[None]]],
        clock: Callable[[], float],
    ) -> None:
        self.config = config
        if setup_logging:
            configure_logging(app_name="llmfleet", config=config.logging.model_dump())
        logger.info("Initializing LLMFleet components from configuration...")

        self.registry = InstanceRegistry.from_config(
            config, provider_factory=provider_factory, log_raw_payloads=config.logging.log_raw_payloads
        )
        self.router = ModelRouter(self.registry)
        self.codec = ResourceAffinityCodec(self.registry.size)
        self.rate_limiter = RateLimiter(
            config.rate_limit.requests_per_second,
            wait_interval=config.rate_limit.wait_interval_ms / 1000.0,
            clock=clock,
            sleep=sleep,
        )
        self.retry_executor = RetryExecutor(
            RetryPolicy(max_retries=config.retry.max_retries, base_delay_ms=config.retry.base_delay_ms),
            sleep=sleep,
        )
        self.schema_generator = SchemaGenerator()
        self.result_types = result_types or default_result_types
        self.agents = AgentManager(
            self.registry,
            config.agents,
            result_types=self.result_types,
            rate_limiter=self.rate_limiter,
            schema_generator=self.schema_generator,
        )
        if config.agents.definitions_path is not None:
            await self.agents.load_definitions()

        sanitizer_agent_id = config.sanitizer.agent_id if config.sanitizer.enabled else None
        self.orchestrator = RequestOrchestrator(
            self.registry,
            self.router,
            self.codec,
            self.agents,
            self.rate_limiter,
            self.retry_executor,
            poll_interval=config.polling.interval_seconds,
            default_response_timeout=config.agents.default_response_timeout,
            auto_materialize=config.agents.auto_materialize,
            sanitizer_agent_id=sanitizer_agent_id,
            schema_generator=self.schema_generator,
            sleep=sleep,
            clock=clock,
        )
        logger.info(
            f"LLMFleet ready: {self.registry.size} instance(s), "
            f"{len(self.agents.list_agents())} agent(s), models {self.registry.all_models()}"
        )

    # --- Exchanges ---

    async def run_exchange(
        self, agent_id: str, user_input: str, resource_handle: Optional[str] = None
    ) -> ExchangeResult:
        """Runs one exchange with an agent. Pass the returned handle back to continue the thread."""
        return await self.orchestrator.run_exchange(agent_id, user_input, resource_handle)

    async def request_agent(
        self, agent_id: str, user_input: str, resource_handle: Optional[str] = None
    ) -> Union[str, Any]:
        """
        Runs an exchange and, when the agent declares a registered result type,
        maps the reply into it.
        """
        result = await self.run_exchange(agent_id, user_input, resource_handle)
        agent = self.agents.get(agent_id)
        result_cls = self.result_types.get(agent.result_type)
        if result_cls is None:
            return result.text
        return map_response(result.text, result_cls)

    async def run_stateless_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        result_type: Any = None,
        temperature: Optional[float] = None,
    ) -> str:
        return await self.orchestrator.run_stateless_completion(model, messages, result_type, temperature)

    async def generate_image(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        quality: Optional[str] = None,
        with_sanitization: bool = True,
    ) -> str:
        return await self.orchestrator.generate_image(prompt, model, size, quality, with_sanitization)

    # --- Resources ---

    async def create_resource(
        self,
        model: str,
        kind: ResourceKind = ResourceKind.THREAD,
        name: Optional[str] = None,
        file_ids: Optional[List[str]] = None,
    ) -> str:
        return await self.orchestrator.create_resource(model, kind, name, file_ids)

    async def delete_resource(self, handle: str, kind: ResourceKind = ResourceKind.THREAD) -> bool:
        return await self.orchestrator.delete_resource(handle, kind)

    # --- Batches ---

    async def create_batch(
        self,
        input_file_id: str,
        endpoint: str = "/v1/chat/completions",
        metadata: Optional[Dict[str, str]] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.orchestrator.create_batch(input_file_id, endpoint, metadata, model)

    async def get_batch(self, handle: str) -> Dict[str, Any]:
        return await self.orchestrator.get_batch(handle)

    async def cancel_batch(self, handle: str) -> Dict[str, Any]:
        return await self.orchestrator.cancel_batch(handle)

    async def list_batches(self, limit: int = 20, instance_index: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.orchestrator.list_batches(limit, instance_index)

    async def poll_batch_until_complete(
        self, handle: str, poll_interval: Optional[float] = None, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        return await self.orchestrator.poll_batch_until_complete(handle, poll_interval, timeout)

    # --- Agents ---

    def get_agent(self, agent_id: str) -> Agent:
        return self.agents.get(agent_id)

    async def register_agent(self, agent: Union[Agent, Dict[str, Any]], persist: bool = False) -> Agent:
        return await self.agents.register_agent(agent, persist=persist)

    async def modify_agent(self, agent_id: str, updates: Dict[str, Any]) -> Agent:
        return await self.agents.modify_agent(agent_id, updates)

    async def materialize_agent(self, agent_id: str, instance_index: Optional[int] = None) -> Agent:
        return await self.agents.materialize(agent_id, instance_index)

    async def reload_agents(self) -> int:
        return await self.agents.reload_all()

    # --- Structured output ---

    def describe_schema(self, result_type: Union[str, Type[Any]]) -> Dict[str, Any]:
        """Schema node for a registered result-type name or a type."""
        if isinstance(result_type, str):
            tp = self.result_types.get(result_type)
            if tp is None:
                return {"type": "object"}
            return self.schema_generator.describe(tp)
        return self.schema_generator.describe(result_type)

    def map_response(self, text: str, result_type: Union[str, Type[T]]) -> Any:
        if isinstance(result_type, str):
            tp = self.result_types.get(result_type)
            if tp is None:
                raise ConfigError(f"Result type '{result_type}' is not registered.")
            return map_response(text, tp)
        return map_response(text, result_type)

    @staticmethod
    def response_ok(text: Any) -> bool:
        return response_ok(text)

    # --- Lifecycle ---

    def update_log_raw_payloads_setting(self, enable: bool) -> None:
        self.registry.update_log_raw_payloads_setting(enable)

    async def close(self):
        """Closes every instance's transport client."""
        if self._closed:
            return
        logger.info("Closing LLMFleet resources...")
        await self.registry.close_all()
        self._closed = True
        logger.info("LLMFleet resources cleanup complete.")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
