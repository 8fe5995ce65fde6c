"""Shared fixtures: a throwaway SQLite database and fake LLM services."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from greener.ai.llm_service import LLMJsonResponse
from greener.db.models import Base, Product
from greener.estimate.store import EstimateStore


class FakeLLM:
    """Stands in for LLMService; returns canned payloads or raises."""

    def __init__(self, payload=None, error=None, cached=False, model="gpt-4o-mini"):
        self.payload = payload
        self.error = error
        self.cached = cached
        self.model = model
        self.configured = True
        self.calls = []

    async def call_llm_json(self, prompt, system_prompt="", temperature=None, use_cache=True):
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        return LLMJsonResponse(data=self.payload, cached=self.cached)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return EstimateStore(session_factory, timeout_seconds=5.0)


@pytest.fixture
def add_products(session_factory):
    """Insert products given as (name, total, quantity[, category]) tuples; returns ids."""

    async def _add(*items):
        base = datetime(2025, 6, 1, 12, 0, 0)
        ids = []
        async with session_factory() as db:
            for offset, item in enumerate(items):
                name, total, quantity = item[:3]
                category = item[3] if len(item) > 3 else None
                product = Product(
                    name=name,
                    total=Decimal(str(total)),
                    unit_price=Decimal(str(total)) / quantity,
                    quantity=quantity,
                    category=category,
                    created_at=base + timedelta(minutes=offset),
                )
                db.add(product)
                await db.flush()
                ids.append(product.id)
            await db.commit()
        return ids

    return _add


@pytest.fixture
def fake_llm():
    return FakeLLM(
        payload={
            "estimatedCo2eKg": 4.2,
            "confidence": 82,
            "reasoning": "Manufacturing dominates the footprint.",
            "alternatives": [
                {
                    "name": "Refurbished model",
                    "carbonReduction": 60,
                    "priceChange": -25,
                    "sustainabilityScore": 8.5,
                }
            ],
        }
    )
