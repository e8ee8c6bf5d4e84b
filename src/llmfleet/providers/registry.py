# src/llmfleet/providers/registry.py
"""
Instance Registry for LLMFleet.

Holds the configured backend instances in declaration order. An instance's
position in the registry is its *instance index*: the number encoded into
resource handles and used to address an agent's native id slots. Instances
are never removed at runtime, so indices are stable for the process
lifetime.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..config.models import FleetConfig, InstanceConfig
from ..exceptions import ConfigError
from ..models import ProviderKind
from .base import BaseProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[InstanceConfig, bool], BaseProvider]


def default_provider_factory(instance_config: InstanceConfig, log_raw_payloads: bool = False) -> BaseProvider:
    """Builds the SDK-backed transport for one instance."""
    provider_config: Dict[str, Any] = {
        "_instance_name": instance_config.id,
        "api_key": instance_config.api_key,
        "endpoint": instance_config.endpoint,
        "kind": instance_config.provider,
        "api_version": instance_config.api_version,
        "timeout": instance_config.timeout,
    }
    return OpenAIProvider(provider_config, log_raw_payloads=log_raw_payloads)


@dataclass(frozen=True)
class Instance:
    """
    One backend endpoint/credential pair and its transport client.

    Immutable after construction. `models` keeps declaration order.
    """
    id: str
    client: BaseProvider = field(compare=False, repr=False)
    models: Tuple[str, ...] = ()
    endpoint: Optional[str] = None
    credential: Optional[str] = field(default=None, repr=False)
    kind: ProviderKind = ProviderKind.DIRECT
    api_version: Optional[str] = None

    def has_model(self, model: str) -> bool:
        return model in self.models


class InstanceRegistry:
    """
    Ordered, append-only collection of backend instances.

    Raises ConfigError when built with zero instances or when two instances
    share an identity string.
    """

    def __init__(self, instances: Iterable[Instance]):
        self._instances: List[Instance] = []
        self._index_by_id: Dict[str, int] = {}
        for instance in instances:
            self.register(instance)
        if not self._instances:
            raise ConfigError("At least one enabled instance must be configured.")

    @classmethod
    def from_config(
        cls,
        config: FleetConfig,
        provider_factory: Optional[ProviderFactory] = None,
        log_raw_payloads: bool = False,
    ) -> "InstanceRegistry":
        """
        Builds the registry from the enabled instances of `config`.

        Disabled instances are skipped entirely and do not consume an index.
        """
        factory = provider_factory or default_provider_factory
        built: List[Instance] = []
        for inst_cfg in config.instances:
            if not inst_cfg.enabled:
                logger.info(f"Instance '{inst_cfg.id}' is disabled, skipping.")
                continue
            client = factory(inst_cfg, log_raw_payloads)
            built.append(Instance(
                id=inst_cfg.id,
                client=client,
                models=tuple(inst_cfg.models),
                endpoint=inst_cfg.endpoint,
                credential=inst_cfg.api_key,
                kind=inst_cfg.provider,
                api_version=inst_cfg.api_version,
            ))
            logger.info(
                f"Instance '{inst_cfg.id}' ({inst_cfg.provider.value}) registered at index {len(built) - 1} "
                f"serving {list(inst_cfg.models)}"
            )
        return cls(built)

    def register(self, instance: Instance) -> int:
        """Appends an instance and returns its index."""
        if instance.id in self._index_by_id:
            raise ConfigError(f"Duplicate instance id '{instance.id}'.")
        index = len(self._instances)
        self._instances.append(instance)
        self._index_by_id[instance.id] = index
        return index

    def get(self, index: int) -> Instance:
        if not 0 <= index < len(self._instances):
            raise ConfigError(
                f"No instance at index {index}; {len(self._instances)} instance(s) are configured."
            )
        return self._instances[index]

    def index_of(self, instance_id: str) -> int:
        try:
            return self._index_by_id[instance_id]
        except KeyError:
            raise ConfigError(f"Unknown instance id '{instance_id}'.")

    def instances_with_model(self, model: str) -> List[Instance]:
        """Instances declaring `model`, in declaration order."""
        return [inst for inst in self._instances if inst.has_model(model)]

    def all_models(self) -> List[str]:
        return sorted({m for inst in self._instances for m in inst.models})

    @property
    def size(self) -> int:
        return len(self._instances)

    def __len__(self) -> int:
        return len(self._instances)

    def __iter__(self):
        return iter(self._instances)

    def update_log_raw_payloads_setting(self, enable: bool) -> None:
        for instance in self._instances:
            instance.client.log_raw_payloads_enabled = enable

    async def close_all(self) -> None:
        """Closes every instance's transport client, logging (not raising) individual failures."""
        logger.info("Closing instance clients...")
        results = await asyncio.gather(
            *(inst.client.close() for inst in self._instances), return_exceptions=True
        )
        for inst, result in zip(self._instances, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing client for instance '{inst.id}': {result}", exc_info=result)
