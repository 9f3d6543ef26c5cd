"""Test the llama.cpp slot manager against a fake OpenAI-compatible client."""

import math
import pytest
import sys
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]  # repo root
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from tenacity import wait_none

from backend.critic.llama_server import LlamaInstance, LlamaServerManager
from backend.critic.critic_evaluator import CriticEvaluator, YES_NO_GRAMMAR


def top_logprob(token, probability):
    return SimpleNamespace(token=token, logprob=math.log(probability))


def completion(answer, top_logprobs):
    """Shape of an OpenAI chat completion with logprobs."""
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=answer),
                logprobs=SimpleNamespace(
                    content=[SimpleNamespace(token=answer, top_logprobs=top_logprobs)]
                ),
            )
        ]
    )


class FakeCompletions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        response = self.responses.pop(0) if self.responses else completion("yes", [])
        if isinstance(response, Exception):
            raise response
        return response


class FakeModels:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    async def list(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("not up yet")
        return SimpleNamespace(data=[SimpleNamespace(id="local-model")])


class FakeOpenAIClient:
    def __init__(self, responses=(), model_failures=0):
        self.chat = SimpleNamespace(completions=FakeCompletions(responses))
        self.models = FakeModels(model_failures)
        self.closed = False

    async def close(self):
        self.closed = True


def make_manager(client, **kwargs):
    manager = LlamaServerManager(
        base_url="http://test/v1",
        model="test-model",
        top_logprobs=5,
        connect_attempts=kwargs.pop("connect_attempts", 1),
        client=client,
        **kwargs,
    )
    # No backoff between connection attempts
    manager.retry_wait = wait_none()
    return manager


# --- Instances -----------------------------------------------------------


def test_instance_builds_messages_and_resets():
    instance = LlamaInstance(slot_id=0, system_prompt="Answer yes or no.")
    instance.messages = [
        {"role": "user", "content": "old"},
        {"role": "assistant", "content": "no"},
    ]

    messages = instance.build_messages("new question")

    assert messages[0] == {"role": "system", "content": "Answer yes or no."}
    assert messages[-1] == {"role": "user", "content": "new question"}
    assert len(messages) == 4

    instance.reset()
    assert instance.messages == []
    assert instance.system_prompt == "Answer yes or no."


@pytest.mark.asyncio
async def test_create_instance_allocates_sequential_slots():
    client = FakeOpenAIClient()
    manager = make_manager(client)

    first = await manager.create_instance("prompt a")
    second = await manager.create_instance("prompt b")

    assert (first, second) == (0, 1)
    assert manager.get_instance(1).system_prompt == "prompt b"
    # Not connected, so no warm-up request
    assert client.chat.completions.requests == []


@pytest.mark.asyncio
async def test_create_instance_warms_cache_when_ready():
    client = FakeOpenAIClient()
    manager = make_manager(client)
    await manager.connect()

    slot_id = await manager.create_instance("You are a critic.")

    request = client.chat.completions.requests[0]
    assert request["max_tokens"] == 1
    assert request["messages"] == [{"role": "system", "content": "You are a critic."}]
    assert request["extra_body"] == {"id_slot": slot_id, "cache_prompt": True}


@pytest.mark.asyncio
async def test_warm_up_failure_still_creates_instance():
    client = FakeOpenAIClient(responses=[ConnectionError("warm-up failed")])
    manager = make_manager(client)
    await manager.connect()

    slot_id = await manager.create_instance("You are a critic.")

    assert manager.get_instance(slot_id) is not None


# --- Connection ----------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_retries_until_ready():
    client = FakeOpenAIClient(model_failures=2)
    manager = make_manager(client, connect_attempts=3)

    assert await manager.connect() is True
    assert manager.is_server_ready is True
    assert client.models.calls == 3


@pytest.mark.asyncio
async def test_connect_failure_leaves_server_not_ready():
    client = FakeOpenAIClient(model_failures=10)
    manager = make_manager(client, connect_attempts=2)

    assert await manager.connect() is False
    assert manager.is_server_ready is False
    assert client.models.calls == 2


# --- Probabilities -------------------------------------------------------


@pytest.mark.asyncio
async def test_probabilities_sum_token_variants():
    client = FakeOpenAIClient(
        responses=[
            completion(
                "yes",
                [
                    top_logprob("yes", 0.5),
                    top_logprob(" Yes", 0.2),
                    top_logprob("no", 0.1),
                    top_logprob("maybe", 0.05),
                ],
            )
        ]
    )
    manager = make_manager(client)
    slot_id = await manager.create_instance("critic")

    probabilities = await manager.get_next_token_probabilities(
        slot_id, "Is it raining?", ["yes", "no"], YES_NO_GRAMMAR
    )

    assert probabilities["yes"] == pytest.approx(0.7)
    assert probabilities["no"] == pytest.approx(0.1)
    assert set(probabilities) == {"yes", "no"}


@pytest.mark.asyncio
async def test_query_request_shape():
    client = FakeOpenAIClient(responses=[completion("no", [top_logprob("no", 0.9)])])
    manager = make_manager(client)
    slot_id = await manager.create_instance("critic")

    await manager.get_next_token_probabilities(slot_id, "q", ["yes", "no"], YES_NO_GRAMMAR)

    request = client.chat.completions.requests[0]
    assert request["model"] == "test-model"
    assert request["max_tokens"] == 1
    assert request["logprobs"] is True
    assert request["top_logprobs"] == 5
    assert request["extra_body"]["grammar"] == YES_NO_GRAMMAR
    assert request["extra_body"]["id_slot"] == slot_id
    assert request["messages"][-1] == {"role": "user", "content": "q"}


@pytest.mark.asyncio
async def test_missing_logprobs_yield_zero_probabilities():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="yes"), logprobs=None)]
    )
    client = FakeOpenAIClient(responses=[response])
    manager = make_manager(client)
    slot_id = await manager.create_instance("critic")

    probabilities = await manager.get_next_token_probabilities(slot_id, "q", ["yes", "no"])

    assert probabilities == {"yes": 0.0, "no": 0.0}


@pytest.mark.asyncio
async def test_history_accumulates_until_reset():
    client = FakeOpenAIClient(
        responses=[
            completion("yes", [top_logprob("yes", 0.9)]),
            completion("no", [top_logprob("no", 0.9)]),
        ]
    )
    manager = make_manager(client)
    slot_id = await manager.create_instance("critic")

    await manager.get_next_token_probabilities(slot_id, "first", ["yes", "no"])
    assert len(manager.get_instance(slot_id).messages) == 2

    manager.reset_instance(slot_id)
    await manager.get_next_token_probabilities(slot_id, "second", ["yes", "no"])

    second_request = client.chat.completions.requests[1]
    assert second_request["messages"] == [
        {"role": "system", "content": "critic"},
        {"role": "user", "content": "second"},
    ]


@pytest.mark.asyncio
async def test_unknown_slot_raises():
    manager = make_manager(FakeOpenAIClient())

    with pytest.raises(KeyError):
        await manager.get_next_token_probabilities(99, "q", ["yes", "no"])
    with pytest.raises(KeyError):
        manager.reset_instance(99)


@pytest.mark.asyncio
async def test_busy_slot_rejects_query_and_reset():
    manager = make_manager(FakeOpenAIClient())
    slot_id = await manager.create_instance("critic")
    manager.get_instance(slot_id).is_processing = True

    with pytest.raises(RuntimeError):
        await manager.get_next_token_probabilities(slot_id, "q", ["yes", "no"])
    with pytest.raises(RuntimeError):
        manager.reset_instance(slot_id)


@pytest.mark.asyncio
async def test_failed_request_clears_busy_flag():
    client = FakeOpenAIClient(responses=[TimeoutError("slow")])
    manager = make_manager(client)
    slot_id = await manager.create_instance("critic")

    with pytest.raises(TimeoutError):
        await manager.get_next_token_probabilities(slot_id, "q", ["yes", "no"])

    assert manager.get_instance(slot_id).is_processing is False
    manager.reset_instance(slot_id)


@pytest.mark.asyncio
async def test_close_releases_client():
    client = FakeOpenAIClient()
    manager = make_manager(client)
    await manager.connect()

    await manager.close()

    assert client.closed is True
    assert manager.is_server_ready is False


# --- With the Critic -----------------------------------------------------


@pytest.mark.asyncio
async def test_critic_over_manager_keeps_each_question_independent():
    client = FakeOpenAIClient(
        responses=[
            completion("yes", []),  # warm-up
            completion("yes", [top_logprob("yes", 0.6), top_logprob("no", 0.2)]),
            completion("no", [top_logprob("yes", 0.1), top_logprob("no", 0.3)]),
        ]
    )
    manager = make_manager(client)
    await manager.connect()

    class NullTelemetry:
        def log_critic_evaluation(self, *args):
            pass

        def log_instance_created(self, *args):
            pass

    critic = CriticEvaluator(manager, telemetry=NullTelemetry())
    await critic.initialize()

    first = await critic.evaluate_yes_no_question("first?")
    second = await critic.evaluate_yes_no_question("second?")

    assert first == pytest.approx(0.75)
    assert second == pytest.approx(0.25)
    # Second question carries no trace of the first
    second_messages = client.chat.completions.requests[2]["messages"]
    assert [m["content"] for m in second_messages[1:]] == ["second?"]
    assert manager.get_instance(critic.slot_id).messages == []


def test_explicit_zero_settings_are_kept():
    manager = LlamaServerManager(
        base_url="http://test/v1",
        model="test-model",
        top_logprobs=0,
        connect_attempts=0,
        client=FakeOpenAIClient(),
    )

    assert manager.top_logprobs == 0
    assert manager.connect_attempts == 0


def test_unset_settings_fall_back_to_config(monkeypatch):
    import config

    monkeypatch.setattr(config, "CRITIC_TOP_LOGPROBS", 12)
    monkeypatch.setattr(config, "LLAMA_CONNECT_ATTEMPTS", 4)

    manager = LlamaServerManager(client=FakeOpenAIClient())

    assert manager.top_logprobs == 12
    assert manager.connect_attempts == 4
