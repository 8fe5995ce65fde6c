"""Estimation pass orchestration: coverage gap, batching, persistence."""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from greener import metrics
from greener.config import settings
from greener.estimate.categories import classify
from greener.estimate.client import CarbonEstimationClient
from greener.estimate.store import (
    EstimateStore,
    StoreInvalidError,
    StoreUnavailableError,
)
from greener.estimate.types import EstimateRecord, EstimationMethod, ProductSnapshot
from greener.logging_config import bind_run_id
from greener.notify.events import EstimationEvents, estimation_events

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Outcome of one estimation pass. Callers must check ``success``."""

    success: bool = True
    total_products: int = 0
    already_estimated: int = 0
    newly_estimated: int = 0
    fallbacks: int = 0
    errors: int = 0
    skipped: bool = False  # Another pass was already running
    cancelled: bool = False
    error: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid4().hex)
    started_at: datetime = field(default_factory=datetime.utcnow)
    duration_seconds: float = 0.0

    @property
    def remaining(self) -> int:
        return max(
            0, self.total_products - self.already_estimated - self.newly_estimated - self.errors
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "success": self.success,
            "totalProducts": self.total_products,
            "alreadyEstimated": self.already_estimated,
            "newlyEstimated": self.newly_estimated,
            "fallbacks": self.fallbacks,
            "errors": self.errors,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "durationSeconds": round(self.duration_seconds, 3),
        }


class CancellationToken:
    """Cooperative cancellation checked between batches."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class SingleFlight:
    """
    Allows one holder at a time.

    ``try_acquire`` checks and sets without suspending, which makes it an
    atomic compare-and-set on a single event loop.
    """

    def __init__(self):
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


def partition(items: list, size: int) -> list[list]:
    """Split into consecutive chunks of ``size``, preserving order."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


def find_uncovered(
    products: list[ProductSnapshot],
    estimates: list[EstimateRecord],
) -> list[ProductSnapshot]:
    """Products with no estimate record, in product order."""
    covered = {record.product_id for record in estimates}
    return [product for product in products if product.id not in covered]


class EstimationOrchestrator:
    """
    Estimates every product that has no estimate yet.

    Only one pass runs at a time per orchestrator; a second call while a
    pass is in progress returns a skipped summary immediately. Records are
    inserted before the next batch starts, so an interrupted pass leaves
    partial coverage that the next pass resumes from.
    """

    def __init__(
        self,
        store: EstimateStore,
        client: Optional[CarbonEstimationClient] = None,
        events: Optional[EstimationEvents] = None,
        batch_size: Optional[int] = None,
        batch_delay_seconds: Optional[float] = None,
        store_retry_attempts: Optional[int] = None,
    ):
        self.store = store
        self.client = client or CarbonEstimationClient()
        self.events = events if events is not None else estimation_events
        self.batch_size = batch_size or settings.estimation_batch_size
        self.batch_delay_seconds = (
            batch_delay_seconds
            if batch_delay_seconds is not None
            else settings.estimation_batch_delay_seconds
        )
        self.store_retry_attempts = (
            store_retry_attempts
            if store_retry_attempts is not None
            else settings.store_retry_attempts
        )
        self._guard = SingleFlight()

    @property
    def running(self) -> bool:
        return self._guard.held

    async def run_estimation_pass(
        self,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunSummary:
        """Run one pass and return its summary. Never raises for store or LLM failures."""
        if not self._guard.try_acquire():
            logger.info("Estimation pass already running, skipping")
            metrics.estimation_passes_total.labels(status="skipped").inc()
            return RunSummary(skipped=True)

        summary = RunSummary()
        start = time.monotonic()
        metrics.estimation_pass_running.set(1)
        try:
            with bind_run_id(summary.run_id):
                await self._run(summary, cancel_token)
        finally:
            summary.duration_seconds = time.monotonic() - start
            self._guard.release()
            metrics.estimation_pass_running.set(0)

        metrics.estimation_pass_duration_seconds.observe(summary.duration_seconds)
        if not summary.success:
            status = "failed"
        elif summary.cancelled:
            status = "cancelled"
        else:
            status = "completed"
        metrics.estimation_passes_total.labels(status=status).inc()

        self.events.publish(summary)
        return summary

    async def _run(self, summary: RunSummary, cancel_token: Optional[CancellationToken]) -> None:
        logger.info("Starting carbon estimation pass")

        try:
            products = await self.store.list_all_products()
            estimates = await self.store.list_all_estimates()
        except Exception as e:
            logger.error(f"Carbon estimation pass failed, cannot read products/estimates: {e}")
            summary.success = False
            summary.errors = 1
            summary.error = str(e)
            return

        uncovered = find_uncovered(products, estimates)
        summary.total_products = len(products)
        summary.already_estimated = len(products) - len(uncovered)
        metrics.uncovered_products.set(len(uncovered))

        logger.info(
            f"Found {summary.total_products} products: {summary.already_estimated} already "
            f"estimated, {len(uncovered)} need new estimates"
        )

        if not uncovered:
            logger.info("All products already have carbon estimates")
            return

        batches = partition(uncovered, self.batch_size)
        for index, batch in enumerate(batches, 1):
            if cancel_token is not None and cancel_token.cancelled:
                logger.warning(f"Estimation pass cancelled before batch {index}/{len(batches)}")
                summary.cancelled = True
                break

            logger.info(
                f"Processing batch {index}/{len(batches)}: "
                + ", ".join(p.name[:30] for p in batch)
            )
            await self._process_batch(batch, summary)

            if index < len(batches) and self.batch_delay_seconds > 0:
                if cancel_token is not None:
                    await cancel_token.sleep(self.batch_delay_seconds)
                else:
                    await asyncio.sleep(self.batch_delay_seconds)

        logger.info(
            f"Carbon estimation pass complete: {summary.newly_estimated} new estimates "
            f"({summary.fallbacks} heuristic fallbacks), {summary.errors} errors"
        )

    async def _process_batch(self, batch: list[ProductSnapshot], summary: RunSummary) -> None:
        batch = [await self._ensure_category(product) for product in batch]

        results = await asyncio.gather(
            *(self.client.estimate(product) for product in batch),
            return_exceptions=True,
        )

        for product, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error(f"Estimation failed for product {product.id}: {result}")
                metrics.estimate_errors_total.labels(reason="client").inc()
                summary.errors += 1
                continue
            if isinstance(result, BaseException):
                raise result

            if await self._insert_with_retry(result):
                summary.newly_estimated += 1
                metrics.estimates_created_total.labels(method=result.method.value).inc()
                if result.method is EstimationMethod.HEURISTIC:
                    summary.fallbacks += 1
            else:
                summary.errors += 1

    async def _ensure_category(self, product: ProductSnapshot) -> ProductSnapshot:
        if product.category is not None:
            return product

        category = classify(product.name)
        try:
            await self.store.backfill_category(product.id, category)
        except Exception as e:
            logger.warning(f"Could not backfill category for product {product.id}: {e}")
        return dataclasses.replace(product, category=category)

    async def _insert_with_retry(self, record: EstimateRecord) -> bool:
        attempts = 1 + max(self.store_retry_attempts, 0)
        for attempt in range(1, attempts + 1):
            try:
                await self.store.insert(record)
                return True
            except StoreInvalidError as e:
                logger.error(f"Rejected estimate for product {record.product_id}: {e}")
                metrics.estimate_errors_total.labels(reason="invalid").inc()
                return False
            except StoreUnavailableError as e:
                if attempt < attempts:
                    logger.warning(
                        f"Store unavailable for product {record.product_id}, retrying "
                        f"({attempt}/{attempts - 1}): {e}"
                    )
                    continue
                logger.error(
                    f"Failed to store estimate for product {record.product_id} "
                    f"after {attempts} attempts: {e}"
                )
                metrics.estimate_errors_total.labels(reason="unavailable").inc()
                return False
            except Exception as e:
                logger.exception(
                    f"Unexpected error storing estimate for product {record.product_id}: {e}"
                )
                metrics.estimate_errors_total.labels(reason="unexpected").inc()
                return False
        return False
