# tests/api/test_fleet_service.py
"""
End-to-end tests for the LLMFleet facade, wired from configuration with
in-memory providers.
"""

import json

import pytest
from pydantic import BaseModel

from llmfleet import LLMFleet
from llmfleet.exceptions import ConfigError, ContentRejectedError, ModelNotServedError
from llmfleet.structured import ResultTypeRegistry


class Story(BaseModel):
    title: str
    words: int


@pytest.fixture
def result_types():
    registry = ResultTypeRegistry()
    registry.register("Story", Story)
    return registry


@pytest.fixture
def create_fleet(provider_factory, fake_clock, result_types):
    """Creates an LLMFleet over fake providers."""
    async def _create(config_dict):
        fleet = await LLMFleet.create(
            config_dict=config_dict,
            provider_factory=provider_factory,
            result_types=result_types,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )
        return fleet

    return _create


class TestCreate:
    @pytest.mark.asyncio
    async def test_empty_pool_is_rejected(self, create_fleet, make_fleet_config):
        with pytest.raises(ConfigError):
            await create_fleet(make_fleet_config())

    @pytest.mark.asyncio
    async def test_loads_agent_definitions(self, create_fleet, make_fleet_config, make_instance, tmp_path):
        (tmp_path / "writer.json").write_text(
            json.dumps({"id": "writer", "model": "gpt-x", "result_class": "Story", "assistant_ids": ["asst_1"]}),
            encoding="utf-8",
        )
        fleet = await create_fleet(make_fleet_config(
            make_instance("solo", "gpt-x"), agents={"definitions_path": str(tmp_path)},
        ))
        agent = fleet.get_agent("writer")
        assert agent.result_type == "Story"
        assert agent.native_ids == ["asst_1"]


class TestExchanges:
    @pytest.mark.asyncio
    async def test_single_instance_exchange(self, create_fleet, make_fleet_config, make_instance):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        await fleet.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})

        result = await fleet.run_exchange("A", "hello?")
        assert result.text == "Hello world"

        follow_up = await fleet.run_exchange("A", "and then?", resource_handle=result.resource_handle)
        assert follow_up.resource_handle == result.resource_handle

    @pytest.mark.asyncio
    async def test_request_agent_maps_registered_result_type(
        self, create_fleet, make_fleet_config, make_instance, provider_factory
    ):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        await fleet.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"], "result_type": "Story"})
        provider_factory.providers["solo"].reply_fragments = ['{"title": "Dawn", ', '"words": 120}']

        story = await fleet.request_agent("A", "write")
        assert story == Story(title="Dawn", words=120)

    @pytest.mark.asyncio
    async def test_request_agent_without_result_type_returns_text(
        self, create_fleet, make_fleet_config, make_instance
    ):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        await fleet.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_1"]})
        assert await fleet.request_agent("A", "hi") == "Hello world"

    @pytest.mark.asyncio
    async def test_materialize_then_exchange_on_every_instance(
        self, create_fleet, make_fleet_config, make_instance
    ):
        fleet = await create_fleet(make_fleet_config(
            make_instance("east", "gpt-x"), make_instance("west", ["gpt-x", "gpt-y"]),
        ))
        await fleet.register_agent({"id": "A", "model": "gpt-x"})
        agent = await fleet.materialize_agent("A")
        assert all(agent.native_ids)

        indices = [(await fleet.run_exchange("A", "hi")).instance_index for _ in range(3)]
        assert indices == [0, 1, 0]

    @pytest.mark.asyncio
    async def test_sanitizer_from_configuration(
        self, create_fleet, make_fleet_config, make_instance, provider_factory
    ):
        fleet = await create_fleet(make_fleet_config(
            make_instance("solo", "gpt-x"), sanitizer={"enabled": True, "agent_id": "cleaner"},
        ))
        await fleet.register_agent({"id": "A", "model": "gpt-x", "native_ids": ["asst_a"]})
        await fleet.register_agent({"id": "cleaner", "model": "gpt-x", "native_ids": ["asst_c"]})
        provider = provider_factory.providers["solo"]
        provider.fail("start_run", ContentRejectedError("solo", "content_filter"))

        result = await fleet.run_exchange("A", "rough")
        assert result.text == "Hello world"
        assert [r["assistant_id"] for r in provider.started_runs] == ["asst_c", "asst_a"]

    @pytest.mark.asyncio
    async def test_unknown_model_for_stateless_completion(self, create_fleet, make_fleet_config, make_instance):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        with pytest.raises(ModelNotServedError):
            await fleet.run_stateless_completion("gpt-q", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_stateless_completion_with_registered_name(
        self, create_fleet, make_fleet_config, make_instance, provider_factory
    ):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        await fleet.run_stateless_completion("gpt-x", [], result_type="Story")
        fmt = provider_factory.providers["solo"].completions[0]["response_format"]
        assert fmt["json_schema"]["name"] == "story_format"


class TestStructuredHelpers:
    @pytest.mark.asyncio
    async def test_describe_schema_by_name_and_type(self, create_fleet, make_fleet_config, make_instance):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        by_name = fleet.describe_schema("Story")
        assert by_name["required"] == ["title", "words"]
        assert fleet.describe_schema(Story) == by_name
        assert fleet.describe_schema("Unknown") == {"type": "object"}

    @pytest.mark.asyncio
    async def test_map_response(self, create_fleet, make_fleet_config, make_instance):
        fleet = await create_fleet(make_fleet_config(make_instance("solo", "gpt-x")))
        assert fleet.map_response('{"title": "t", "words": 1}', "Story").words == 1
        with pytest.raises(ConfigError):
            fleet.map_response("{}", "Unknown")

    def test_response_ok(self):
        assert LLMFleet.response_ok('{"a": 1}') is True
        assert LLMFleet.response_ok('{"a": ') is False


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_async_context_manager_closes_clients(
        self, provider_factory, fake_clock, make_fleet_config, make_instance
    ):
        async with await LLMFleet.create(
            config_dict=make_fleet_config(make_instance("a", "gpt-x"), make_instance("b", "gpt-x")),
            provider_factory=provider_factory,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        ) as fleet:
            fleet.update_log_raw_payloads_setting(True)
            assert all(p.log_raw_payloads_enabled for p in provider_factory.providers.values())
        assert all(p.closed for p in provider_factory.providers.values())
        await fleet.close()
