# src/llmfleet/agents/manager.py
"""
Agent store for LLMFleet.

Agents are loaded from a directory of JSON definition files (one agent per
file) or registered programmatically. Each agent carries one native
assistant id slot per enabled instance; slots are filled when the agent is
*materialized* on an instance and are written back to the definition file so
the next process start reuses the same remote assistants.

File operations use aiofiles.
"""

import asyncio
import json
import logging
import os
import pathlib
from typing import Any, Dict, List, Optional, Union

import aiofiles
import aiofiles.os as aios
from pydantic import ValidationError

from ..config.models import AgentsSectionConfig
from ..exceptions import AgentNotFoundError, ConfigError, LLMFleetError, ModelNotServedError
from ..logging_config import log_display
from ..models import Agent
from ..providers.registry import InstanceRegistry
from ..resilience.rate_limiter import RateLimiter
from ..structured.schema_generator import ResultTypeRegistry, SchemaGenerator, default_result_types

logger = logging.getLogger(__name__)

DEFINITION_SUFFIX = ".json"
MODIFIABLE_FIELDS = ("instructions", "temperature", "model")


class AgentManager:
    """
    Holds the in-memory agent set and materializes agents on instances.

    Args:
        registry: The instance registry; its size fixes the number of slots per agent.
        config: The `[agents]` configuration section.
        result_types: Registry used to build structured-output formats.
        rate_limiter: Shared limiter applied to remote assistant writes.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        config: Optional[AgentsSectionConfig] = None,
        result_types: Optional[ResultTypeRegistry] = None,
        rate_limiter: Optional[RateLimiter] = None,
        schema_generator: Optional[SchemaGenerator] = None,
    ):
        self.registry = registry
        self.config = config or AgentsSectionConfig()
        self.result_types = result_types or default_result_types
        self.rate_limiter = rate_limiter
        self.schema_generator = schema_generator or SchemaGenerator()
        self._agents: Dict[str, Agent] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # --- Lookup ---

    def get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def list_agents(self) -> List[Agent]:
        return list(self._agents.values())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    # --- Loading ---

    async def load_definitions(self, path: Optional[Union[str, pathlib.Path]] = None) -> int:
        """
        Loads every `*.json` definition in `path` (default: `agents.definitions_path`).

        Additive: agents already in memory but absent from the directory are kept.
        Unreadable or invalid files are logged and skipped.

        Returns:
            Number of agents loaded.
        """
        directory = path or self.config.definitions_path
        if directory is None:
            logger.debug("No agent definitions path configured; nothing to load.")
            return 0
        directory = pathlib.Path(os.path.expanduser(str(directory)))
        if not await aios.path.isdir(directory):
            raise ConfigError(f"Agent definitions path is not a directory: {directory}")

        loaded = 0
        for filename in sorted(await aios.listdir(directory)):
            if not filename.endswith(DEFINITION_SUFFIX):
                continue
            file_path = directory / filename
            try:
                async with aiofiles.open(file_path, mode="r", encoding="utf-8") as f:
                    content = await f.read()
                agent = Agent.model_validate(json.loads(content))
            except json.JSONDecodeError as e:
                logger.error(f"Could not decode agent definition {file_path}: {e}. Skipping.")
                continue
            except ValidationError as e:
                logger.error(f"Invalid agent definition {file_path}: {e}. Skipping.")
                continue
            except OSError as e:
                logger.error(f"Could not read agent definition {file_path}: {e}. Skipping.")
                continue

            agent._source_path = str(file_path)
            agent.resize_slots(self.registry.size)
            if agent.id in self._agents:
                logger.debug(f"Agent '{agent.id}' reloaded from {file_path}")
            self._agents[agent.id] = agent
            loaded += 1

        log_display(logger, logging.INFO, f"Loaded {loaded} agent definition(s) from {directory}")
        return loaded

    async def reload_all(self) -> int:
        """Clears the in-memory agent set and rebuilds it from the definitions directory."""
        self._agents.clear()
        self._locks.clear()
        return await self.load_definitions()

    # --- Registration and modification ---

    async def register_agent(self, agent: Union[Agent, Dict[str, Any]], persist: bool = False) -> Agent:
        """
        Adds (or replaces) an agent in memory.

        Args:
            agent: An Agent or a definition dictionary.
            persist: Also write a definition file into `agents.definitions_path`.
        """
        if isinstance(agent, dict):
            try:
                agent = Agent.model_validate(agent)
            except ValidationError as e:
                raise ConfigError(f"Invalid agent definition: {e}")
        agent.resize_slots(self.registry.size)
        existing = self._agents.get(agent.id)
        if existing is not None and agent._source_path is None:
            agent._source_path = existing._source_path
        self._agents[agent.id] = agent
        logger.info(f"Registered agent '{agent.id}' (model '{agent.model}')")
        if persist:
            await self.save_agent(agent)
        return agent

    async def modify_agent(self, agent_id: str, updates: Dict[str, Any]) -> Agent:
        """
        Updates `instructions`, `temperature` and/or `model` of an agent.

        Remote assistants already materialized are updated in place so the
        change applies to the next exchange on every instance.
        """
        unknown = set(updates) - set(MODIFIABLE_FIELDS)
        if unknown:
            raise ConfigError(f"Cannot modify agent fields {sorted(unknown)}; allowed: {list(MODIFIABLE_FIELDS)}")

        agent = self.get(agent_id)
        try:
            candidate = agent.model_copy(update=updates)
            candidate = Agent.model_validate(candidate.model_dump(by_alias=False))
        except ValidationError as e:
            raise ConfigError(f"Invalid update for agent '{agent_id}': {e}")
        candidate._source_path = agent._source_path

        if "model" in updates and updates["model"] != agent.model:
            if not self.registry.instances_with_model(candidate.model):
                raise ModelNotServedError(candidate.model, self.registry.all_models())

        async with self._lock_for(agent_id):
            for index, native_id in enumerate(candidate.native_ids):
                if native_id is None:
                    continue
                if not self.registry.get(index).has_model(candidate.model):
                    logger.warning(
                        f"Instance {index} does not serve '{candidate.model}'; "
                        f"dropping native id '{native_id}' of agent '{agent_id}'"
                    )
                    candidate.native_ids = [
                        None if i == index else value for i, value in enumerate(candidate.native_ids)
                    ]
                    continue
                await self._push_assistant(candidate, index, native_id)
            self._agents[agent_id] = candidate

        await self._persist(candidate)
        logger.info(f"Modified agent '{agent_id}': {sorted(updates)}")
        return candidate

    # --- Materialization ---

    async def materialize(self, agent_id: str, instance_index: Optional[int] = None) -> Agent:
        """
        Creates (or updates, when the slot is filled) the remote assistant for
        an agent on one instance or on every instance serving its model.

        Raises:
            AgentNotFoundError: Unknown agent.
            ModelNotServedError: No instance (or not the requested one) serves the agent's model.
        """
        agent = self.get(agent_id)
        if instance_index is None:
            indices = [i for i in range(self.registry.size) if self.registry.get(i).has_model(agent.model)]
            if not indices:
                raise ModelNotServedError(agent.model, self.registry.all_models())
        else:
            if not self.registry.get(instance_index).has_model(agent.model):
                raise ModelNotServedError(agent.model, list(self.registry.get(instance_index).models))
            indices = [instance_index]

        async with self._lock_for(agent_id):
            for index in indices:
                native_id = await self._push_assistant(agent, index, agent.native_id_for(index))
                agent.set_native_id(index, native_id)

        await self._persist(agent)
        log_display(logger, logging.INFO, f"Materialized agent '{agent_id}' on instance(s) {indices}")
        return agent

    async def ensure_native_id(self, agent: Agent, instance_index: int) -> str:
        """
        Returns the agent's native id for `instance_index`, creating the remote
        assistant first when the slot is empty.
        """
        native_id = agent.native_id_for(instance_index)
        if native_id:
            return native_id
        async with self._lock_for(agent.id):
            native_id = agent.native_id_for(instance_index)
            if native_id:
                return native_id
            native_id = await self._push_assistant(agent, instance_index, None)
            agent.set_native_id(instance_index, native_id)
        await self._persist(agent)
        return native_id

    def response_format_for(self, agent: Agent) -> Optional[Dict[str, Any]]:
        if not agent.result_type:
            return None
        tp = self.result_types.get(agent.result_type)
        if tp is None:
            logger.warning(f"Result type '{agent.result_type}' of agent '{agent.id}' is not registered; using JSON mode")
        return self.schema_generator.response_format(agent.result_type, tp)

    async def _push_assistant(self, agent: Agent, instance_index: int, native_id: Optional[str]) -> str:
        instance = self.registry.get(instance_index)
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        params: Dict[str, Any] = {
            "model": agent.model,
            "name": agent.display_name,
            "instructions": agent.instructions,
            "temperature": agent.temperature,
            "response_format": self.response_format_for(agent),
            "retrieval": agent.retrieval,
        }
        if native_id:
            logger.debug(f"Updating assistant '{native_id}' of agent '{agent.id}' on instance '{instance.id}'")
            return await instance.client.update_assistant(native_id, **params)
        logger.debug(f"Creating assistant for agent '{agent.id}' on instance '{instance.id}'")
        return await instance.client.create_assistant(**params)

    # --- Persistence ---

    async def save_agent(self, agent: Agent) -> pathlib.Path:
        """Writes the agent definition to its source file (or `<definitions_path>/<id>.json`)."""
        if agent._source_path:
            file_path = pathlib.Path(agent._source_path)
        elif self.config.definitions_path is not None:
            directory = pathlib.Path(os.path.expanduser(str(self.config.definitions_path)))
            await aios.makedirs(directory, exist_ok=True)
            file_path = directory / f"{agent.id}{DEFINITION_SUFFIX}"
        else:
            raise ConfigError(f"Cannot persist agent '{agent.id}': no agents.definitions_path configured.")

        tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
        try:
            async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
                await f.write(json.dumps(agent.to_definition(), indent=2))
            await aios.replace(tmp_path, file_path)
        except OSError as e:
            logger.error(f"Error writing agent definition {file_path}: {e}")
            raise LLMFleetError(f"Failed to write agent definition for '{agent.id}': {e}")
        agent._source_path = str(file_path)
        logger.debug(f"Agent '{agent.id}' saved to {file_path}")
        return file_path

    async def _persist(self, agent: Agent) -> None:
        if not self.config.persist_native_ids:
            return
        if agent._source_path is None and self.config.definitions_path is None:
            return
        await self.save_agent(agent)

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent_id] = lock
        return lock
