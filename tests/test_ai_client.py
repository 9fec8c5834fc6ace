"""AI completion client tests against a recording stand-in for AsyncOpenAI."""

from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from firearm_intel import ai_client
from firearm_intel.ai_client import AICompletionClient
from firearm_intel.config import OpenAIConfig
from firearm_intel.exceptions import AIResponseError, AIServiceError, ConfigurationError


@pytest.fixture()
def answer() -> dict:
    """What the stand-in returns: a content string or an exception to raise."""
    return {"content": '{"manufacturer": "Colt"}'}


@pytest.fixture()
def created(monkeypatch, answer) -> list:
    instances = []

    class RecordingOpenAI:
        def __init__(self, api_key):
            self.api_key = api_key
            self.requests = []
            self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
            instances.append(self)

        async def _create(self, **kwargs):
            self.requests.append(kwargs)
            if isinstance(answer["content"], Exception):
                raise answer["content"]
            message = SimpleNamespace(content=answer["content"])
            return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)

    monkeypatch.setattr(ai_client, "AsyncOpenAI", RecordingOpenAI)
    return instances


@pytest.fixture()
def client(created) -> AICompletionClient:
    return AICompletionClient(OpenAIConfig(api_key="sk-test", model="gpt-4o", temperature=0.3))


def test_missing_api_key_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        AICompletionClient(OpenAIConfig(api_key=""))


@pytest.mark.asyncio
async def test_complete_json_sends_schema_and_decodes_object(client, created):
    data = await client.complete_json(
        "Identify", {"title": "Colt Python"}, {"type": "object"}, schema_name="firearm_enrichment",
    )

    assert data == {"manufacturer": "Colt"}
    (request,) = created[0].requests
    assert request["model"] == "gpt-4o"
    assert request["temperature"] == 0.3
    assert request["response_format"]["json_schema"]["name"] == "firearm_enrichment"
    assert request["messages"][1]["content"] == '{"title": "Colt Python"}'


@pytest.mark.asyncio
async def test_calls_on_one_loop_share_a_client(client, created):
    await client.complete_json("Identify", {}, {})
    await client.complete_json("Identify", {}, {}, temperature=0.0)

    assert len(created) == 1
    assert created[0].requests[1]["temperature"] == 0.0


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "not json", "[1, 2]"])
async def test_answers_that_are_not_json_objects_are_rejected(client, answer, content):
    answer["content"] = content
    with pytest.raises(AIResponseError):
        await client.complete_json("Identify", {}, {})


@pytest.mark.asyncio
async def test_api_failures_are_wrapped(client, answer):
    answer["content"] = OpenAIError("rate limited")
    with pytest.raises(AIServiceError):
        await client.complete_json("Identify", {}, {})


def test_each_thread_keeps_its_own_client(client, created):
    barrier = threading.Barrier(2)
    seen = {}

    async def use_twice():
        first = client._get_client()
        # Both loops are alive here and each has fetched its client once
        await asyncio.to_thread(barrier.wait, 5)
        return first, client._get_client()

    def worker(name):
        seen[name] = asyncio.run(use_twice())

    threads = [threading.Thread(target=worker, args=(name,)) for name in ("request", "runner")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    (request_first, request_second), (runner_first, runner_second) = seen["request"], seen["runner"]
    assert request_first is request_second
    assert runner_first is runner_second
    assert request_first is not runner_first
    assert len(created) == 2
