# src/llmfleet/models.py
"""
Core data models for the LLMFleet library.

This module defines the Pydantic models and enums used to represent agents,
provider kinds, remote run statuses, thread messages and exchange results.
Instance descriptors live in `llmfleet.config.models` (validated input) and
`llmfleet.providers.registry` (the runtime, immutable `Instance`).
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, field_validator


class ProviderKind(str, Enum):
    """
    Kind of backend an instance talks to.

    DIRECT is the vendor's own endpoint. GATEWAY is a hosted deployment that
    needs an API version parameter and rewrites the deployment path per call.
    """
    DIRECT = "direct"
    GATEWAY = "gateway"

    @classmethod
    def _missing_(cls, value: object):  # type: ignore[misc]
        """Accepts case-insensitive values and the vendor names 'openai' / 'azure'."""
        if isinstance(value, str):
            lower_value = value.strip().lower()
            if lower_value == "openai":
                return cls.DIRECT
            if lower_value == "azure":
                return cls.GATEWAY
            for member in cls:
                if member.value == lower_value:
                    return member
        return None


class RunStatus(str, Enum):
    """Status of an asynchronous remote run."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES

    @classmethod
    def _missing_(cls, value: object):  # type: ignore[misc]
        if isinstance(value, str):
            lower_value = value.strip().lower()
            for member in cls:
                if member.value == lower_value:
                    return member
        return None


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.EXPIRED,
    RunStatus.INCOMPLETE,
})


class ResourceKind(str, Enum):
    """Kinds of stateful server-side objects that are pinned to one instance."""
    THREAD = "thread"
    VECTOR_STORE = "vector_store"
    BATCH = "batch"


class ThreadMessage(BaseModel):
    """
    A message read back from a remote conversation thread.

    Attributes:
        id: Remote message identifier.
        role: Author role ("user" or "assistant").
        text_fragments: The text-bearing content parts of the message, in order.
            Non-text parts (images, files) are not represented.
    """
    id: str = Field(default="", description="Remote message identifier.")
    role: str = Field(default="assistant", description="Author role of the message.")
    text_fragments: List[str] = Field(default_factory=list, description="Text content parts, in order.")

    @property
    def text(self) -> str:
        return "".join(self.text_fragments)


class RunHandle(BaseModel):
    """Identifies a started run on a thread."""
    run_id: str
    thread_id: str
    status: RunStatus = RunStatus.QUEUED


class Agent(BaseModel):
    """
    A logical agent whose work is distributed over the instance pool.

    `native_ids` holds one slot per enabled instance (indexed by instance
    position). `None` marks a slot whose remote assistant has not been
    created yet. Slots are filled by `AgentManager.materialize`.

    Attributes:
        id: Application-level identifier.
        name: Human-readable name used when creating remote assistants.
        model: Target model name; routing only considers instances serving it.
        instructions: System instructions for the remote assistant.
        result_type: Registered result-type name for structured output, if any.
        temperature: Sampling temperature passed to runs.
        response_timeout: Seconds to wait for a run to finish.
        native_ids: Remote assistant identifiers, one slot per instance.
        retrieval: Whether the assistant is created with file search enabled.
        description: Free-form description.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", validate_assignment=True)

    id: str = Field(description="Application-level agent identifier.")
    name: Optional[str] = Field(default=None, description="Human-readable name.")
    model: str = Field(description="Target model name.")
    instructions: str = Field(default="", description="System instructions.")
    result_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("result_type", "result_class"),
        description="Registered result-type name for structured output.",
    )
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    response_timeout: Optional[float] = Field(default=None, gt=0, description="Per-exchange timeout in seconds.")
    native_ids: List[Optional[str]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("native_ids", "assistant_ids"),
        description="Remote assistant identifiers, one slot per instance.",
    )
    retrieval: bool = Field(default=False, description="Enable file search on the remote assistant.")
    description: Optional[str] = Field(default=None)

    _source_path: Optional[str] = PrivateAttr(default=None)

    @field_validator("id", "model")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("native_ids", mode="before")
    @classmethod
    def _blank_slots_are_empty(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [item if item else None for item in v]
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def native_id_for(self, instance_index: int) -> Optional[str]:
        """Returns the remote assistant id for `instance_index`, or None if the slot is empty."""
        if 0 <= instance_index < len(self.native_ids):
            return self.native_ids[instance_index]
        return None

    def resize_slots(self, instance_count: int) -> None:
        """Pads (with empty slots) or truncates `native_ids` to exactly `instance_count` entries."""
        current = list(self.native_ids)
        if len(current) < instance_count:
            current.extend([None] * (instance_count - len(current)))
        elif len(current) > instance_count:
            current = current[:instance_count]
        self.native_ids = current

    def set_native_id(self, instance_index: int, native_id: str) -> None:
        """Fills one slot. The list is replaced, not mutated, so readers never see a partial update."""
        if instance_index < 0:
            raise IndexError(f"Invalid instance index {instance_index}")
        current = list(self.native_ids)
        if instance_index >= len(current):
            current.extend([None] * (instance_index + 1 - len(current)))
        current[instance_index] = native_id
        self.native_ids = current

    def to_definition(self) -> Dict[str, Any]:
        """Serializes the agent back to the on-disk definition layout."""
        return self.model_dump(mode="json", exclude_none=False)


class ExchangeResult(BaseModel):
    """
    Outcome of one logical exchange with an agent.

    Attributes:
        text: Concatenated text of the newest assistant message.
        resource_handle: Encoded thread handle; pass it back to continue the conversation.
        instance_index: Index of the instance that served the exchange.
        attempts: Number of attempts the retry layer needed.
    """
    text: str
    resource_handle: str
    instance_index: int
    attempts: int = 1
