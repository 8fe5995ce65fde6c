"""Tests for estimation pass orchestration."""

import asyncio

import pytest
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from greener.estimate.client import CarbonEstimationClient
from greener.estimate.store import EstimateStore, StoreInvalidError, StoreUnavailableError
from greener.estimate.types import Category, EstimateRecord, EstimationMethod, ProductSnapshot
from greener.notify.events import EstimationEvents
from greener.worker.orchestrator import (
    CancellationToken,
    EstimationOrchestrator,
    RunSummary,
    SingleFlight,
    find_uncovered,
    partition,
)
from tests.conftest import FakeLLM


class FlakyStore(EstimateStore):
    """Fails the first ``failures`` inserts with the given error."""

    def __init__(self, session_factory, error, failures=1):
        super().__init__(session_factory, timeout_seconds=5.0)
        self.error = error
        self.failures = failures
        self.insert_calls = 0

    async def insert(self, record):
        self.insert_calls += 1
        if self.insert_calls <= self.failures:
            raise self.error
        return await super().insert(record)


class PoolExhaustedStore(EstimateStore):
    """Store whose connection pool never hands out a connection."""

    def __init__(self, session_factory):
        super().__init__(session_factory, timeout_seconds=5.0)
        self.insert_attempts = 0

    async def _insert(self, record):
        self.insert_attempts += 1
        raise PoolTimeoutError("QueuePool limit of size 5 overflow 10 reached")


class CrashingStore(EstimateStore):
    async def backfill_category(self, product_id, category):
        raise RuntimeError("backfill crashed")

    async def insert(self, record):
        raise RuntimeError("insert crashed")


class BrokenListingStore(EstimateStore):
    async def list_all_products(self):
        raise StoreUnavailableError("connection refused")


class ExplodingClient:
    """Client that raises for one product name and delegates otherwise."""

    def __init__(self, delegate, bad_name):
        self.delegate = delegate
        self.bad_name = bad_name

    async def estimate(self, product):
        if product.name == self.bad_name:
            raise RuntimeError("unexpected client failure")
        return await self.delegate.estimate(product)


def _orchestrator(store, llm=None, **kwargs):
    kwargs.setdefault("batch_delay_seconds", 0)
    kwargs.setdefault("events", EstimationEvents())
    client = CarbonEstimationClient(llm=llm or FakeLLM(error=ValueError("offline")))
    return EstimationOrchestrator(store, client=client, **kwargs)


def _snapshot(product_id):
    return ProductSnapshot(
        id=product_id, name=f"P{product_id}", category=None, unit_price=1.0, quantity=1, total_price=1.0
    )


def test_partition():
    assert partition([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert partition([], 3) == []
    with pytest.raises(ValueError):
        partition([1], 0)


def test_find_uncovered_preserves_order():
    products = [_snapshot(i) for i in (1, 2, 3, 4)]
    estimates = [
        EstimateRecord(
            product_id=3,
            estimated_co2e_kg=1.0,
            confidence=60,
            method=EstimationMethod.HEURISTIC,
            factor_source="category-fallback",
            factor_id="heuristic-other",
        )
    ]

    assert [p.id for p in find_uncovered(products, estimates)] == [1, 2, 4]


def test_single_flight():
    guard = SingleFlight()
    assert guard.try_acquire() is True
    assert guard.try_acquire() is False
    guard.release()
    assert guard.try_acquire() is True


def test_summary_remaining():
    summary = RunSummary(total_products=10, already_estimated=4, newly_estimated=3, errors=1)
    assert summary.remaining == 2
    assert summary.to_dict()["newlyEstimated"] == 3


@pytest.mark.asyncio
async def test_pass_estimates_uncovered_products(store, add_products, fake_llm):
    ids = await add_products(
        ("Wireless Mouse", 49.99, 1), ("Yoga Mat", 40.0, 1), ("Cotton Socks", 12.0, 3)
    )
    orchestrator = _orchestrator(store, llm=fake_llm, batch_size=2)

    summary = await orchestrator.run_estimation_pass()

    assert summary.success is True
    assert summary.total_products == 3
    assert summary.newly_estimated == 3
    assert summary.fallbacks == 0
    assert summary.errors == 0
    grouped = await store.estimates_by_product()
    assert sorted(grouped) == sorted(ids)
    assert all(len(records) == 1 for records in grouped.values())
    assert orchestrator.running is False


@pytest.mark.asyncio
async def test_second_pass_is_a_no_op(store, add_products):
    await add_products(("Wireless Mouse", 49.99, 1), ("Board Game", 25.0, 1))
    orchestrator = _orchestrator(store)

    first = await orchestrator.run_estimation_pass()
    second = await orchestrator.run_estimation_pass()

    assert first.newly_estimated == 2
    assert first.fallbacks == 2
    assert second.newly_estimated == 0
    assert second.already_estimated == 2
    assert len(await store.list_all_estimates()) == 2


@pytest.mark.asyncio
async def test_empty_store(store):
    summary = await _orchestrator(store).run_estimation_pass()

    assert summary.success is True
    assert summary.total_products == 0
    assert summary.newly_estimated == 0


@pytest.mark.asyncio
async def test_concurrent_passes_do_not_duplicate(store, add_products):
    await add_products(*[(f"Item {n}", 10.0 * n, 1) for n in range(1, 6)])
    orchestrator = _orchestrator(store, batch_size=2)

    results = await asyncio.gather(
        orchestrator.run_estimation_pass(), orchestrator.run_estimation_pass()
    )

    skipped = [s for s in results if s.skipped]
    completed = [s for s in results if not s.skipped]
    assert len(skipped) == 1
    assert len(completed) == 1
    assert completed[0].newly_estimated == 5
    grouped = await store.estimates_by_product()
    assert len(grouped) == 5
    assert all(len(records) == 1 for records in grouped.values())


@pytest.mark.asyncio
async def test_heuristic_fallback_record(store, add_products):
    (product_id,) = await add_products(("Wireless Mouse", 49.99, 1))

    summary = await _orchestrator(store).run_estimation_pass()

    record = await store.best_estimate_for(product_id)
    assert summary.fallbacks == 1
    assert record.method is EstimationMethod.HEURISTIC
    assert record.estimated_co2e_kg == 0.5
    assert record.confidence == 60
    assert record.factor_id == "heuristic-electronics"


@pytest.mark.asyncio
async def test_category_is_backfilled(store, add_products):
    (product_id,) = await add_products(("Smart Speaker", 60.0, 1))

    await _orchestrator(store).run_estimation_pass()

    (product,) = await store.list_all_products()
    assert product.id == product_id
    assert product.category is Category.ELECTRONICS


@pytest.mark.asyncio
async def test_unavailable_store_is_retried_once(session_factory, add_products):
    await add_products(("Desk Lamp", 30.0, 1))
    store = FlakyStore(session_factory, StoreUnavailableError("blip"), failures=1)

    summary = await _orchestrator(store).run_estimation_pass()

    assert store.insert_calls == 2
    assert summary.newly_estimated == 1
    assert summary.errors == 0


@pytest.mark.asyncio
async def test_unavailable_store_gives_up_after_retry(session_factory, add_products):
    await add_products(("Desk Lamp", 30.0, 1))
    store = FlakyStore(session_factory, StoreUnavailableError("down"), failures=5)

    summary = await _orchestrator(store).run_estimation_pass()

    assert store.insert_calls == 2
    assert summary.newly_estimated == 0
    assert summary.errors == 1
    assert summary.success is True


@pytest.mark.asyncio
async def test_invalid_insert_is_not_retried(session_factory, add_products):
    await add_products(("Desk Lamp", 30.0, 1), ("Board Game", 20.0, 1))
    store = FlakyStore(session_factory, StoreInvalidError("unknown product"), failures=1)

    summary = await _orchestrator(store).run_estimation_pass()

    assert store.insert_calls == 2
    assert summary.newly_estimated == 1
    assert summary.errors == 1


@pytest.mark.asyncio
async def test_listing_failure_is_reported(session_factory):
    events = EstimationEvents()
    received = []
    events.subscribe(received.append)
    orchestrator = _orchestrator(BrokenListingStore(session_factory), events=events)

    summary = await orchestrator.run_estimation_pass()

    assert summary.success is False
    assert summary.errors == 1
    assert "connection refused" in summary.error
    assert received == [summary]
    assert orchestrator.running is False


@pytest.mark.asyncio
async def test_client_exception_counts_as_error(store, add_products):
    await add_products(("Desk Lamp", 30.0, 1), ("Cursed Item", 20.0, 1))
    orchestrator = _orchestrator(store)
    orchestrator.client = ExplodingClient(orchestrator.client, "Cursed Item")

    summary = await orchestrator.run_estimation_pass()

    assert summary.newly_estimated == 1
    assert summary.errors == 1
    assert summary.remaining == 0


@pytest.mark.asyncio
async def test_cancellation_between_batches(store, add_products):
    await add_products(("A lamp", 30.0, 1), ("A mug", 10.0, 1), ("A rug", 80.0, 1))
    token = CancellationToken()
    orchestrator = _orchestrator(store, batch_size=1)

    class CancellingClient:
        def __init__(self, delegate):
            self.delegate = delegate

        async def estimate(self, product):
            token.cancel()
            return await self.delegate.estimate(product)

    orchestrator.client = CancellingClient(orchestrator.client)

    summary = await orchestrator.run_estimation_pass(cancel_token=token)

    assert summary.cancelled is True
    assert summary.newly_estimated == 1
    assert summary.remaining == 2
    assert len(await store.list_all_estimates()) == 1

    resumed = await orchestrator.run_estimation_pass()
    assert resumed.already_estimated == 1
    assert resumed.newly_estimated == 2


@pytest.mark.asyncio
async def test_cancel_token_interrupts_delay():
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    assert await token.sleep(5) is True
    assert await CancellationToken().sleep(0) is False


@pytest.mark.asyncio
async def test_completion_event_published(store, add_products):
    await add_products(("Desk Lamp", 30.0, 1))
    events = EstimationEvents()
    received = []

    async def on_complete(summary):
        received.append(summary)

    events.subscribe(on_complete)
    summary = await _orchestrator(store, events=events).run_estimation_pass()
    await events.drain()

    assert received == [summary]


@pytest.mark.asyncio
async def test_exhausted_pool_is_retried_then_counted(session_factory, add_products):
    await add_products(("Desk Lamp", 30.0, 1), ("Board Game", 20.0, 1))
    store = PoolExhaustedStore(session_factory)

    summary = await _orchestrator(store).run_estimation_pass()

    assert summary.success is True
    assert summary.newly_estimated == 0
    assert summary.errors == 2
    assert store.insert_attempts == 4


@pytest.mark.asyncio
async def test_unexpected_store_errors_do_not_abort_pass(session_factory, add_products):
    await add_products(("Desk Lamp", 30.0, 1), ("Smart Speaker", 60.0, 1))
    events = EstimationEvents()
    received = []
    events.subscribe(received.append)
    orchestrator = _orchestrator(CrashingStore(session_factory), events=events)

    summary = await orchestrator.run_estimation_pass()

    assert summary.success is True
    assert summary.errors == 2
    assert summary.newly_estimated == 0
    assert received == [summary]
    assert orchestrator.running is False
