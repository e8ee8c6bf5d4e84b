# tests/agents/test_orchestrator.py
"""
Tests for RequestOrchestrator: the exchange state machine, affinity pinning,
failover on retry, polling timeouts, sanitization and the stateless,
resource and batch operations.
"""

import asyncio

import pytest

from llmfleet.agents import AgentManager, RequestOrchestrator
from llmfleet.config import FleetConfig
from llmfleet.exceptions import (
    AgentNotFoundError,
    ConfigError,
    ContentRejectedError,
    ExchangeTimeoutError,
    ModelNotServedError,
    NativeIdMissingError,
    RetriesExhaustedError,
    RunFailedError,
    TransientRemoteError,
)
from llmfleet.models import ResourceKind, RunStatus
from llmfleet.providers import InstanceRegistry
from llmfleet.resilience import RateLimiter, RetryExecutor, RetryPolicy
from llmfleet.routing import ModelRouter, ResourceAffinityCodec


@pytest.fixture
def build(provider_factory, fake_clock, make_instance):
    """Builds an orchestrator over the given instance descriptors."""

    def _build(*instances, auto_materialize=False, sanitizer_agent_id=None, max_retries=3, sleep=None):
        config = FleetConfig(instances=list(instances))
        registry = InstanceRegistry.from_config(config, provider_factory=provider_factory)
        limiter = RateLimiter(1000, clock=fake_clock, sleep=fake_clock.sleep)
        agents = AgentManager(registry, rate_limiter=limiter)
        return RequestOrchestrator(
            registry,
            ModelRouter(registry),
            ResourceAffinityCodec(registry.size),
            agents,
            limiter,
            RetryExecutor(RetryPolicy(max_retries=max_retries, base_delay_ms=1000), sleep=fake_clock.sleep),
            poll_interval=1.0,
            default_response_timeout=30.0,
            auto_materialize=auto_materialize,
            sanitizer_agent_id=sanitizer_agent_id,
            sleep=sleep or fake_clock.sleep,
            clock=fake_clock,
        )

    return _build


@pytest.fixture
def single(build, make_instance):
    return build(make_instance("solo", "gpt-x"))


@pytest.fixture
def pair(build, make_instance):
    """Instance 0 serves gpt-x, instance 1 serves gpt-x and gpt-y."""
    return build(make_instance("east", "gpt-x"), make_instance("west", "gpt-x,gpt-y"))


class TestRunExchange:
    @pytest.mark.asyncio
    async def test_single_instance_end_to_end(self, single, provider_factory, fake_clock):
        """No handle: create a thread, submit, poll to completed, return the concatenated text."""
        await single.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"], "temperature": 0.5})
        result = await single.run_exchange("A", "hi there")

        provider = provider_factory.providers["solo"]
        thread_id = provider.started_runs[0]["thread_id"]
        assert result.text == "Hello world"
        assert result.resource_handle == thread_id
        assert result.instance_index == 0
        assert result.attempts == 1
        assert provider.threads[thread_id] == [{"role": "user", "content": "hi there"}]
        assert provider.started_runs[0]["assistant_id"] == "asst_1"
        assert provider.started_runs[0]["temperature"] == 0.5
        assert fake_clock.sleeps == [1.0, 1.0]
        assert provider.calls == [
            "create_thread", "append_message", "start_run",
            "get_run_status", "get_run_status", "list_messages",
        ]

    @pytest.mark.asyncio
    async def test_handle_pins_instance(self, pair, provider_factory):
        await pair.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_e", "asst_w"]})
        west = provider_factory.providers["west"]
        west.threads["thread_existing"] = []

        for _ in range(3):
            result = await pair.run_exchange("A", "again", resource_handle="1_thread_existing")
            assert result.instance_index == 1
            assert result.resource_handle == "1_thread_existing"

        assert provider_factory.providers["east"].calls == []
        assert "create_thread" not in west.calls
        assert all(run["thread_id"] == "thread_existing" for run in west.started_runs)
        assert all(run["assistant_id"] == "asst_w" for run in west.started_runs)

    @pytest.mark.asyncio
    async def test_new_exchanges_rotate_and_encode_prefix(self, pair):
        await pair.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_e", "asst_w"]})
        first = await pair.run_exchange("A", "one")
        second = await pair.run_exchange("A", "two")
        assert (first.instance_index, second.instance_index) == (0, 1)
        assert first.resource_handle.startswith("0_thread_")
        assert second.resource_handle.startswith("1_thread_")

    @pytest.mark.asyncio
    async def test_missing_native_id_is_configuration_error(self, pair, provider_factory):
        await pair.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_e", None]})
        await pair.run_exchange("A", "one")
        with pytest.raises(NativeIdMissingError) as exc_info:
            await pair.run_exchange("A", "two")
        assert exc_info.value.instance_index == 1
        assert exc_info.value.instance_id == "west"
        assert provider_factory.providers["west"].calls.count("start_run") == 0

    @pytest.mark.asyncio
    async def test_auto_materialize_fills_slot(self, build, make_instance, provider_factory):
        orchestrator = build(make_instance("solo", "gpt-x"), auto_materialize=True)
        agent = await orchestrator.agents.register_agent({"id": "A", "model": "gpt-x"})
        result = await orchestrator.run_exchange("A", "hi")
        provider = provider_factory.providers["solo"]
        assert result.text == "Hello world"
        assert agent.native_ids[0] in provider.assistants
        assert provider.started_runs[0]["assistant_id"] == agent.native_ids[0]

    @pytest.mark.asyncio
    async def test_unknown_agent_and_model(self, single):
        with pytest.raises(AgentNotFoundError):
            await single.run_exchange("ghost", "hi")
        await single.agents.register_agent({"id": "B", "model": "gpt-z", "native_ids": ["asst_1"]})
        with pytest.raises(ModelNotServedError):
            await single.run_exchange("B", "hi")

    @pytest.mark.asyncio
    async def test_handle_without_prefix_routes_to_instance_zero(self, single):
        await single.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})
        result = await single.run_exchange("A", "hi", resource_handle="thread_plain")
        assert result.instance_index == 0


class TestRetriesAndFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_fails_over_to_next_instance(self, pair, provider_factory, fake_clock):
        await pair.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_e", "asst_w"]})
        provider_factory.providers["east"].fail("start_run", TransientRemoteError("east", "502"))

        result = await pair.run_exchange("A", "hi")
        assert result.instance_index == 1
        assert result.attempts == 2
        assert 1.0 in fake_clock.sleeps

    @pytest.mark.asyncio
    async def test_retries_with_handle_stay_on_pinned_instance(self, pair, provider_factory):
        await pair.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_e", "asst_w"]})
        west = provider_factory.providers["west"]
        west.threads["thread_existing"] = []
        west.fail("start_run", TransientRemoteError("west", "502"))

        result = await pair.run_exchange("A", "again", resource_handle="1_thread_existing")
        assert result.instance_index == 1
        assert result.attempts == 2
        assert west.calls.count("start_run") == 2
        assert provider_factory.providers["east"].calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_poll_stops_polling(self, build, make_instance, provider_factory, fake_clock):
        polling = asyncio.Event()

        async def stalling_sleep(seconds):
            if provider_factory.providers["solo"].calls.count("get_run_status") >= 2:
                polling.set()
                await asyncio.Event().wait()
            await fake_clock.sleep(seconds)

        orchestrator = build(make_instance("solo", "gpt-x"), sleep=stalling_sleep)
        provider = provider_factory.providers["solo"]
        provider.run_statuses = [RunStatus.IN_PROGRESS]
        await orchestrator.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})

        task = asyncio.create_task(orchestrator.run_exchange("A", "hi"))
        await asyncio.wait_for(polling.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)

        assert provider.calls.count("get_run_status") == 2
        assert provider.calls.count("start_run") == 1
        assert "list_messages" not in provider.calls

    @pytest.mark.asyncio
    async def test_poll_timeout_is_retried_then_exhausted(self, single, provider_factory, fake_clock):
        """A run that never finishes times out on each attempt; four attempts, then a terminal error."""
        provider = provider_factory.providers["solo"]
        provider.run_statuses = [RunStatus.IN_PROGRESS]
        await single.agents.register_agent(
            {"id": "A", "model": "gpt-x", "native_ids": ["asst_1"], "response_timeout": 3}
        )
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await single.run_exchange("A", "hi")

        error = exc_info.value
        assert error.attempts == 4
        assert isinstance(error.last_error, ExchangeTimeoutError)
        assert error.last_status == "in_progress"
        assert provider.calls.count("start_run") == 4
        backoffs = [s for s in fake_clock.sleeps if s != 1.0]
        assert backoffs == [2.0, 4.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [RunStatus.FAILED, RunStatus.INCOMPLETE])
    async def test_failed_run_is_retried(self, single, provider_factory, status):
        provider = provider_factory.providers["solo"]
        provider.run_statuses = [status]
        await single.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await single.run_exchange("A", "hi")
        assert isinstance(exc_info.value.last_error, RunFailedError)
        assert exc_info.value.last_status == status.value
        assert provider.calls.count("get_run_status") == 4

    @pytest.mark.asyncio
    async def test_empty_thread_after_completion_is_transient(self, single, provider_factory):
        provider = provider_factory.providers["solo"]
        provider.fail("list_messages", TransientRemoteError("solo", "no messages"))
        await single.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})
        result = await single.run_exchange("A", "hi")
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_content_rejection_sanitizes_once(self, build, make_instance, provider_factory):
        orchestrator = build(make_instance("solo", "gpt-x"), sanitizer_agent_id="cleaner")
        await orchestrator.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_a"]})
        await orchestrator.agents.register_agent({"id": "cleaner", "model": "gpt-x", "native_ids": ["asst_c"]})
        provider = provider_factory.providers["solo"]
        provider.fail("append_message", ContentRejectedError("solo", "content_filter"))

        result = await orchestrator.run_exchange("A", "rough words")
        assistants = [run["assistant_id"] for run in provider.started_runs]
        assert assistants == ["asst_c", "asst_a"]
        user_messages = [m["content"] for msgs in provider.threads.values() for m in msgs]
        assert user_messages == ["rough words", "Hello world"]
        assert result.text == "Hello world"

    @pytest.mark.asyncio
    async def test_content_rejection_without_sanitizer(self, single, provider_factory):
        await single.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})
        provider_factory.providers["solo"].fail("append_message", ContentRejectedError("solo", "blocked"))
        with pytest.raises(ContentRejectedError):
            await single.run_exchange("A", "hi")

    @pytest.mark.asyncio
    async def test_configuration_error_is_not_retried(self, single, provider_factory):
        await single.agents.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})
        provider = provider_factory.providers["solo"]
        provider.fail("create_thread", ConfigError("bad credentials"))
        with pytest.raises(ConfigError, match="bad credentials"):
            await single.run_exchange("A", "hi")
        assert provider.calls == ["create_thread"]


class TestResources:
    @pytest.mark.asyncio
    async def test_create_and_delete_thread(self, pair, provider_factory):
        handle = await pair.create_resource("gpt-y")
        assert handle.startswith("1_")
        assert await pair.delete_resource(handle) is True
        assert provider_factory.providers["west"].threads == {}

    @pytest.mark.asyncio
    async def test_vector_store(self, pair, provider_factory):
        handle = await pair.create_resource("gpt-x", ResourceKind.VECTOR_STORE, name="docs", file_ids=["f1"])
        index, native_id = pair.codec.decode(handle)
        store = provider_factory.providers[["east", "west"][index]].vector_stores[native_id]
        assert store == {"name": "docs", "file_ids": ["f1"]}
        assert await pair.delete_resource(handle, ResourceKind.VECTOR_STORE) is True

    @pytest.mark.asyncio
    async def test_delete_unknown_or_out_of_range(self, pair):
        assert await pair.delete_resource("0_thread_missing") is False
        assert await pair.delete_resource("9_thread_x") is False

    @pytest.mark.asyncio
    async def test_batches_cannot_be_created_as_resources(self, pair):
        with pytest.raises(ConfigError):
            await pair.create_resource("gpt-x", ResourceKind.BATCH)


class TestStatelessCalls:
    @pytest.mark.asyncio
    async def test_completion_with_structured_output(self, single, provider_factory):
        from pydantic import BaseModel

        class Verdict(BaseModel):
            ok: bool

        text = await single.run_stateless_completion(
            "gpt-x", [{"role": "user", "content": "ok?"}], result_type=Verdict, temperature=0.0,
        )
        assert text == '{"ok": true}'
        sent = provider_factory.providers["solo"].completions[0]
        assert sent["temperature"] == 0.0
        assert sent["response_format"]["json_schema"]["name"] == "verdict_format"
        assert sent["response_format"]["json_schema"]["schema"]["required"] == ["ok"]

    @pytest.mark.asyncio
    async def test_completion_with_unregistered_name_uses_json_mode(self, single, provider_factory):
        await single.run_stateless_completion("gpt-x", [], result_type="Nope")
        assert provider_factory.providers["solo"].completions[0]["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_generate_image(self, single, provider_factory):
        url = await single.generate_image("a lighthouse", "gpt-x")
        assert url == "https://images.example/1.png"
        assert provider_factory.providers["solo"].image_prompts == ["a lighthouse"]


class TestBatches:
    @pytest.mark.asyncio
    async def test_batch_lifecycle(self, pair, provider_factory, fake_clock):
        batch = await pair.create_batch("file_1", metadata={"job": "nightly"})
        assert batch["handle"] == f"0_{batch['id']}"
        east = provider_factory.providers["east"]
        assert east.batches[batch["id"]]["metadata"] == {"job": "nightly"}

        cancelled = await pair.cancel_batch(batch["handle"])
        assert cancelled["status"] == "cancelling"

        east.batches[batch["id"]]["status"] = "cancelled"
        final = await pair.poll_batch_until_complete(batch["handle"])
        assert final["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_batch_routed_by_model(self, pair):
        batch = await pair.create_batch("file_1", model="gpt-y")
        assert batch["handle"].startswith("1_")

    @pytest.mark.asyncio
    async def test_list_batches_across_instances(self, pair):
        await pair.create_batch("file_1", model="gpt-y")
        await pair.create_batch("file_2")
        batches = await pair.list_batches()
        assert sorted(b["handle"][0] for b in batches) == ["0", "1"]
        assert len(await pair.list_batches(instance_index=1)) == 1

    @pytest.mark.asyncio
    async def test_poll_batch_timeout(self, pair):
        batch = await pair.create_batch("file_1")
        with pytest.raises(ExchangeTimeoutError):
            await pair.poll_batch_until_complete(batch["handle"], poll_interval=5.0, timeout=12.0)
