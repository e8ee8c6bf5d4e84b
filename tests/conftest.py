# tests/conftest.py
"""
Shared fixtures for the LLMFleet test suite.

`FakeProvider` is an in-memory `BaseProvider`: threads, runs, assistants,
vector stores and batches live in dictionaries, and failures can be queued
per operation. `FakeClock` supplies a monotonic clock and an async sleep
that advances it, so timing behavior is asserted without real waiting.
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import pytest

from llmfleet.models import RunHandle, RunStatus, ThreadMessage
from llmfleet.providers.base import BaseProvider


class FakeClock:
    """Monotonic clock with an async sleep that advances it and records each delay."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProvider(BaseProvider):
    """In-memory transport for one instance."""

    _ids = itertools.count(1)

    def __init__(self, config: Dict[str, Any], log_raw_payloads: bool = False):
        super().__init__(config, log_raw_payloads)
        self.name = config.get("_instance_name", "fake")
        self.reply_fragments: List[str] = ["Hello", " world"]
        self.run_statuses: List[RunStatus] = [RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
        self.completion_text = '{"ok": true}'
        self.image_url = "https://images.example/1.png"
        self.threads: Dict[str, List[Dict[str, str]]] = {}
        self.runs: Dict[str, List[RunStatus]] = {}
        self.started_runs: List[Dict[str, Any]] = []
        self.assistants: Dict[str, Dict[str, Any]] = {}
        self.assistant_updates: List[Dict[str, Any]] = []
        self.vector_stores: Dict[str, Dict[str, Any]] = {}
        self.batches: Dict[str, Dict[str, Any]] = {}
        self.completions: List[Dict[str, Any]] = []
        self.image_prompts: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.closed = False

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{self.name}{next(self._ids)}"

    def fail(self, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of `operation`."""
        self.failures.setdefault(operation, []).extend(errors)

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def get_name(self) -> str:
        return self.name

    async def create_thread(self) -> str:
        self._record("create_thread")
        thread_id = self._next_id("thread")
        self.threads[thread_id] = []
        return thread_id

    async def append_message(self, thread_id: str, content: str, role: str = "user") -> str:
        self._record("append_message")
        self.threads.setdefault(thread_id, []).append({"role": role, "content": content})
        return self._next_id("msg")

    async def start_run(self, thread_id: str, assistant_id: str, temperature: Optional[float] = None) -> RunHandle:
        self._record("start_run")
        run_id = self._next_id("run")
        self.runs[run_id] = list(self.run_statuses)
        self.started_runs.append({"thread_id": thread_id, "assistant_id": assistant_id, "temperature": temperature})
        return RunHandle(run_id=run_id, thread_id=thread_id, status=RunStatus.QUEUED)

    async def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        self._record("get_run_status")
        remaining = self.runs[run_id]
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    async def list_messages(self, thread_id: str, limit: int = 20) -> List[ThreadMessage]:
        self._record("list_messages")
        reply = ThreadMessage(id=self._next_id("msg"), role="assistant", text_fragments=list(self.reply_fragments))
        history = [
            ThreadMessage(id=f"m{i}", role=m["role"], text_fragments=[m["content"]])
            for i, m in enumerate(reversed(self.threads.get(thread_id, [])))
        ]
        return ([reply] + history)[:limit]

    async def delete_thread(self, thread_id: str) -> bool:
        self._record("delete_thread")
        return self.threads.pop(thread_id, None) is not None

    async def create_vector_store(self, name: Optional[str] = None, file_ids: Optional[List[str]] = None) -> str:
        self._record("create_vector_store")
        store_id = self._next_id("vs")
        self.vector_stores[store_id] = {"name": name, "file_ids": list(file_ids or [])}
        return store_id

    async def delete_vector_store(self, vector_store_id: str) -> bool:
        self._record("delete_vector_store")
        return self.vector_stores.pop(vector_store_id, None) is not None

    async def create_assistant(self, model: str, name=None, instructions=None, temperature=None,
                               response_format=None, retrieval: bool = False) -> str:
        self._record("create_assistant")
        assistant_id = self._next_id("asst")
        self.assistants[assistant_id] = {
            "model": model, "name": name, "instructions": instructions,
            "temperature": temperature, "response_format": response_format, "retrieval": retrieval,
        }
        return assistant_id

    async def update_assistant(self, assistant_id: str, model: str, name=None, instructions=None,
                               temperature=None, response_format=None, retrieval: bool = False) -> str:
        self._record("update_assistant")
        params = {
            "model": model, "name": name, "instructions": instructions,
            "temperature": temperature, "response_format": response_format, "retrieval": retrieval,
        }
        self.assistants[assistant_id] = params
        self.assistant_updates.append({"id": assistant_id, **params})
        return assistant_id

    async def chat_completion(self, model: str, messages, temperature=None, response_format=None, **kwargs) -> str:
        self._record("chat_completion")
        self.completions.append({
            "model": model, "messages": messages, "temperature": temperature, "response_format": response_format,
        })
        return self.completion_text

    async def generate_image(self, prompt: str, model: str, size: str = "1024x1024", quality=None) -> str:
        self._record("generate_image")
        self.image_prompts.append(prompt)
        return self.image_url

    async def create_batch(self, input_file_id: str, endpoint: str = "/v1/chat/completions", metadata=None):
        self._record("create_batch")
        batch_id = self._next_id("batch")
        self.batches[batch_id] = {
            "id": batch_id, "status": "validating", "input_file_id": input_file_id,
            "endpoint": endpoint, "metadata": metadata,
        }
        return dict(self.batches[batch_id])

    async def get_batch(self, batch_id: str) -> Dict[str, Any]:
        self._record("get_batch")
        return dict(self.batches[batch_id])

    async def cancel_batch(self, batch_id: str) -> Dict[str, Any]:
        self._record("cancel_batch")
        self.batches[batch_id]["status"] = "cancelling"
        return dict(self.batches[batch_id])

    async def list_batches(self, limit: int = 20, after: Optional[str] = None) -> List[Dict[str, Any]]:
        self._record("list_batches")
        return [dict(b) for b in list(self.batches.values())[:limit]]

    async def close(self) -> None:
        self.closed = True


class FakeProviderFactory:
    """Provider factory that remembers the FakeProvider built for each instance id."""

    def __init__(self):
        self.providers: Dict[str, FakeProvider] = {}

    def __call__(self, instance_config, log_raw_payloads: bool = False) -> FakeProvider:
        provider = FakeProvider({"_instance_name": instance_config.id}, log_raw_payloads)
        self.providers[instance_config.id] = provider
        return provider


def instance_dict(instance_id: str, models, **extra: Any) -> Dict[str, Any]:
    """Instance descriptor with a dummy credential."""
    return {"id": instance_id, "api_key": f"key-{instance_id}", "models": models, **extra}


def fleet_config_dict(*instances: Dict[str, Any], **sections: Any) -> Dict[str, Any]:
    """Fleet config with fast timings suitable for tests."""
    config: Dict[str, Any] = {
        "instances": list(instances),
        "rate_limit": {"requests_per_second": 1000},
        "retry": {"max_retries": 3, "base_delay_ms": 1000},
        "polling": {"interval_seconds": 1.0},
    }
    config.update(sections)
    return config


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider_factory() -> FakeProviderFactory:
    return FakeProviderFactory()


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def make_instance():
    return instance_dict


@pytest.fixture
def make_fleet_config():
    return fleet_config_dict
