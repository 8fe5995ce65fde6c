"""LLM service for OpenAI integration, response caching and cost tracking."""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis
from openai import AsyncOpenAI

from greener.config import settings

logger = logging.getLogger(__name__)


class LLMCostLimitError(RuntimeError):
    """Raised when the daily LLM spend limit has been reached."""
    pass


@dataclass
class LLMResponse:
    """Raw completion text and whether it came from the cache."""

    content: str
    cached: bool = False


@dataclass
class LLMJsonResponse:
    """Parsed JSON completion and whether it came from the cache."""

    data: Any
    cached: bool = False


class LLMService:
    """
    Service for LLM interactions with OpenAI.

    Features:
    - JSON-mode chat completions
    - Redis response cache (cache failures degrade to a miss)
    - Per-call timeout
    - Daily cost tracking and limit, reset at UTC midnight
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        cache_enabled: Optional[bool] = None,
        redis_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        cache_timeout_seconds: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.llm_model
        self.cache_enabled = (
            cache_enabled if cache_enabled is not None else settings.llm_cache_enabled
        )
        self.redis_url = redis_url or settings.redis_url
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self.cache_timeout_seconds = cache_timeout_seconds or settings.redis_timeout_seconds
        self._client: Optional[AsyncOpenAI] = None
        self._redis: Optional[redis.Redis] = None
        self._daily_cost: float = 0.0
        self._call_count: int = 0
        self._cache_hits: int = 0
        self._stats_date: date = _utc_today()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ValueError("OpenAI API key not configured")
            self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection for caching."""
        if not self.cache_enabled:
            return None

        if self._redis is None:
            try:
                self._redis = await redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=self.cache_timeout_seconds,
                    socket_connect_timeout=self.cache_timeout_seconds,
                )
            except Exception as e:
                logger.warning(f"Failed to connect to Redis for LLM cache: {e}")
                return None
        return self._redis

    def _get_cache_key(self, prompt: str, system_prompt: str, model: str) -> str:
        """Generate cache key for prompt."""
        combined = f"{system_prompt}:{prompt}:{model}"
        key_hash = hashlib.sha256(combined.encode('utf-8')).hexdigest()
        return f"llm_cache:{key_hash}"

    async def _cache_get(self, key: str) -> Optional[str]:
        redis_client = await self._get_redis()
        if redis_client is None:
            return None
        try:
            return await asyncio.wait_for(
                redis_client.get(key), timeout=self.cache_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("LLM cache read timed out, treating as miss")
            return None
        except Exception as e:
            logger.warning(f"LLM cache read failed, treating as miss: {e}")
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        redis_client = await self._get_redis()
        if redis_client is None:
            return
        try:
            await asyncio.wait_for(
                redis_client.setex(key, settings.llm_cache_ttl_seconds, value),
                timeout=self.cache_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("LLM cache write timed out, skipping")
        except Exception as e:
            logger.warning(f"LLM cache write failed: {e}")

    def _check_cost_limit(self) -> bool:
        """Check if daily cost limit is exceeded."""
        self._roll_daily_stats()
        if not settings.track_llm_costs:
            return True

        if self._daily_cost >= settings.llm_cost_limit_per_day:
            logger.warning(
                f"Daily LLM cost limit reached: ${self._daily_cost:.2f} >= "
                f"${settings.llm_cost_limit_per_day:.2f}"
            )
            return False
        return True

    def _estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """
        Estimate cost for LLM call.

        Pricing (approximate, per 1K tokens):
        - gpt-4o-mini: $0.00015 input, $0.0006 output
        - gpt-4o: $0.0025 input, $0.01 output
        """
        if "mini" in model.lower():
            input_cost = (prompt_tokens / 1000) * 0.00015
            output_cost = (completion_tokens / 1000) * 0.0006
        else:
            input_cost = (prompt_tokens / 1000) * 0.0025
            output_cost = (completion_tokens / 1000) * 0.01

        return input_cost + output_cost

    async def call_llm(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: Optional[float] = None,
        json_mode: bool = False,
        use_cache: bool = True,
    ) -> LLMResponse:
        """
        Call LLM with a prompt and return the completion text.

        Args:
            prompt: User prompt
            system_prompt: System prompt/instructions
            temperature: Temperature (defaults to settings.llm_temperature)
            json_mode: Ask the API for a JSON object response
            use_cache: Whether to use the response cache

        Returns:
            LLMResponse with the text and cache flag

        Raises:
            LLMCostLimitError: Daily spend limit reached
            asyncio.TimeoutError: The call exceeded the configured timeout
        """
        model = self.model
        temperature = temperature if temperature is not None else settings.llm_temperature

        cache_key = self._get_cache_key(prompt, system_prompt, model)
        if use_cache:
            cached = await self._cache_get(cache_key)
            if cached:
                logger.debug(f"LLM cache hit for prompt: {prompt[:50]}...")
                self._cache_hits += 1
                return LLMResponse(content=cached, cached=True)

        if not self._check_cost_limit():
            raise LLMCostLimitError("Daily LLM cost limit exceeded")

        client = await self._get_client()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": settings.llm_max_tokens,
            "timeout": self.timeout_seconds,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await asyncio.wait_for(
            client.chat.completions.create(**kwargs),
            timeout=self.timeout_seconds,
        )

        if not response.choices or response.choices[0].message is None:
            raise ValueError("Invalid OpenAI response structure")

        result = response.choices[0].message.content or ""

        if settings.track_llm_costs and response.usage is not None:
            prompt_tokens = response.usage.prompt_tokens
            completion_tokens = response.usage.completion_tokens
            cost = self._estimate_cost(model, prompt_tokens, completion_tokens)
            self._daily_cost += cost
            logger.debug(
                f"LLM call cost: ${cost:.4f} "
                f"(tokens: {prompt_tokens}+{completion_tokens}, total: ${self._daily_cost:.2f})"
            )

        self._call_count += 1

        if use_cache and result:
            await self._cache_set(cache_key, result)

        return LLMResponse(content=result, cached=False)

    async def call_llm_json(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: Optional[float] = None,
        use_cache: bool = True,
    ) -> LLMJsonResponse:
        """
        Call LLM in JSON mode and parse the response.

        Raises:
            ValueError: The response is not valid JSON
        """
        response = await self.call_llm(
            prompt=prompt,
            system_prompt=system_prompt,
            temperature=temperature,
            json_mode=True,
            use_cache=use_cache,
        )
        return LLMJsonResponse(data=parse_json_response(response.content), cached=response.cached)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get LLM service statistics.

        Returns:
            Dictionary with call count, cache hits, daily cost, etc.
        """
        self._roll_daily_stats()
        return {
            "call_count": self._call_count,
            "cache_hits": self._cache_hits,
            "daily_cost": self._daily_cost,
            "cost_limit": settings.llm_cost_limit_per_day,
            "cache_enabled": self.cache_enabled,
        }

    def reset_daily_stats(self):
        """Reset daily cost and call count."""
        self._daily_cost = 0.0
        self._call_count = 0
        self._cache_hits = 0
        self._stats_date = _utc_today()
        logger.info("LLM daily stats reset")

    def _roll_daily_stats(self) -> None:
        """Start a fresh cost window when the UTC day changes."""
        today = _utc_today()
        if today != self._stats_date:
            logger.info(
                f"New UTC day {today.isoformat()}, resetting LLM spend of ${self._daily_cost:.2f}"
            )
            self.reset_daily_stats()

    async def close(self):
        """Close connections."""
        if self._redis:
            await self._redis.close()
            self._redis = None
        if self._client:
            await self._client.close()
            self._client = None


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_json_response(text: str) -> Any:
    """Parse a JSON completion, tolerating a surrounding markdown fence."""
    response_text = (text or "").strip()
    if response_text.startswith("```json"):
        response_text = response_text[7:]
    if response_text.startswith("```"):
        response_text = response_text[3:]
    if response_text.endswith("```"):
        response_text = response_text[:-3]
    response_text = response_text.strip()

    try:
        return json.loads(response_text)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM JSON response: {e}\nResponse: {response_text[:200]}")
        raise ValueError(f"Invalid JSON response from LLM: {e}") from e


# Global LLM service instance
llm_service = LLMService()
