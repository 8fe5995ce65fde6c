"""Tests for LLM service."""

import asyncio
import time
from datetime import date
from types import SimpleNamespace

import pytest

from greener.ai.llm_service import (
    LLMCostLimitError,
    LLMService,
    llm_service,
    parse_json_response,
)


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))],
            usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=1000),
        )


class FakeRedis:
    def __init__(self, fail=False):
        self.values = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise ConnectionError("redis down")
        self.values[key] = value


class HangingRedis:
    """Redis whose commands never answer."""

    async def get(self, key):
        await asyncio.sleep(5)

    async def setex(self, key, ttl, value):
        await asyncio.sleep(5)


def _service(content='{"estimatedCo2eKg": 1.5}', redis_client=None, **kwargs):
    service = LLMService(
        api_key="sk-test", model="gpt-4o-mini", cache_enabled=redis_client is not None, **kwargs
    )
    completions = FakeCompletions(content)
    service._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    service._redis = redis_client
    return service, completions


@pytest.mark.asyncio
async def test_get_stats():
    """Test getting LLM service statistics."""
    stats = llm_service.get_stats()

    assert isinstance(stats, dict)
    assert "call_count" in stats
    assert "daily_cost" in stats


def test_parse_json_response_strips_fences():
    assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_response('```\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_response(' {"a": 3} ') == {"a": 3}


def test_parse_json_response_rejects_garbage():
    with pytest.raises(ValueError):
        parse_json_response("I think about 4 kg")


def test_configured():
    assert LLMService(api_key="sk-test").configured is True
    assert LLMService(api_key="").configured is False


@pytest.mark.asyncio
async def test_call_llm_json_uses_json_mode():
    service, completions = _service()

    response = await service.call_llm_json("prompt", system_prompt="system")

    assert response.data == {"estimatedCo2eKg": 1.5}
    assert response.cached is False
    request = completions.calls[0]
    assert request["response_format"] == {"type": "json_object"}
    assert request["messages"][0] == {"role": "system", "content": "system"}
    assert service.get_stats()["call_count"] == 1
    assert service.get_stats()["daily_cost"] > 0


@pytest.mark.asyncio
async def test_cache_hit_is_flagged():
    service, completions = _service(redis_client=FakeRedis())

    first = await service.call_llm_json("prompt")
    second = await service.call_llm_json("prompt")

    assert first.cached is False
    assert second.cached is True
    assert second.data == first.data
    assert len(completions.calls) == 1
    assert service.get_stats()["cache_hits"] == 1


@pytest.mark.asyncio
async def test_cache_failure_is_a_miss():
    service, completions = _service(redis_client=FakeRedis(fail=True))

    response = await service.call_llm_json("prompt")

    assert response.cached is False
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_cost_limit(monkeypatch):
    service, completions = _service()
    monkeypatch.setattr("greener.ai.llm_service.settings.track_llm_costs", True)
    monkeypatch.setattr("greener.ai.llm_service.settings.llm_cost_limit_per_day", 0.01)
    service._daily_cost = 0.02

    with pytest.raises(LLMCostLimitError):
        await service.call_llm("prompt", use_cache=False)
    assert completions.calls == []

    service.reset_daily_stats()
    assert service.get_stats()["daily_cost"] == 0.0


@pytest.mark.asyncio
async def test_hanging_cache_is_bounded():
    service, completions = _service(redis_client=HangingRedis(), cache_timeout_seconds=0.05)

    started = time.monotonic()
    response = await service.call_llm_json("prompt")

    assert time.monotonic() - started < 1.0
    assert response.cached is False
    assert response.data == {"estimatedCo2eKg": 1.5}
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_redis_connection_uses_socket_timeouts(monkeypatch):
    captured = {}

    async def fake_from_url(url, **kwargs):
        captured.update(kwargs, url=url)
        return FakeRedis()

    monkeypatch.setattr("greener.ai.llm_service.redis.from_url", fake_from_url)
    service = LLMService(
        api_key="sk-test",
        cache_enabled=True,
        redis_url="redis://cache:6379/1",
        cache_timeout_seconds=0.5,
    )

    assert isinstance(await service._get_redis(), FakeRedis)
    assert captured["url"] == "redis://cache:6379/1"
    assert captured["socket_timeout"] == 0.5
    assert captured["socket_connect_timeout"] == 0.5


@pytest.mark.asyncio
async def test_cost_limit_resets_on_new_utc_day(monkeypatch):
    service, completions = _service()
    monkeypatch.setattr("greener.ai.llm_service.settings.track_llm_costs", True)
    monkeypatch.setattr("greener.ai.llm_service.settings.llm_cost_limit_per_day", 0.01)
    service._daily_cost = 0.02
    service._call_count = 7
    service._stats_date = date(2000, 1, 1)

    response = await service.call_llm("prompt", use_cache=False)

    assert response.content == '{"estimatedCo2eKg": 1.5}'
    assert len(completions.calls) == 1
    stats = service.get_stats()
    assert stats["call_count"] == 1
    assert 0 < stats["daily_cost"] < 0.02
    assert service._stats_date != date(2000, 1, 1)
