"""Persistence for products and append-only estimate records."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Iterable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greener import metrics
from greener.config import settings
from greener.db.models import EmissionEstimate, Product, UserPreferences
from greener.estimate.types import (
    Alternative,
    Category,
    EstimateRecord,
    EstimationMethod,
    ProductSnapshot,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_USER_ID = "default"


class StoreError(RuntimeError):
    """Base class for estimate store failures."""
    pass


class StoreUnavailableError(StoreError):
    """Store could not be reached or timed out (transient)."""
    pass


class StoreInvalidError(StoreError):
    """Write rejected by a constraint, e.g. unknown product (permanent)."""
    pass


def select_best_estimate(records: Iterable[EstimateRecord]) -> Optional[EstimateRecord]:
    """
    Pick the effective estimate for one product.

    Model beats cached beats heuristic; within a method the most recent
    record wins (id breaks timestamp ties).
    """
    best: Optional[EstimateRecord] = None
    best_key = None
    for record in records:
        key = (
            record.method.precedence,
            record.created_at or datetime.min,
            record.id or 0,
        )
        if best_key is None or key > best_key:
            best, best_key = record, key
    return best


def _to_snapshot(row: Product) -> ProductSnapshot:
    return ProductSnapshot(
        id=row.id,
        name=row.name,
        category=Category.parse(row.category),
        unit_price=float(row.unit_price),
        quantity=row.quantity,
        total_price=float(row.total),
        transaction_id=row.transaction_id,
        store=row.store,
        purchased_at=row.purchased_at,
        created_at=row.created_at,
    )


def _to_record(row: EmissionEstimate) -> EstimateRecord:
    return EstimateRecord(
        id=row.id,
        product_id=row.product_id,
        estimated_co2e_kg=row.estimated_co2e_kg,
        confidence=row.confidence,
        method=EstimationMethod(row.method),
        factor_source=row.factor_source,
        factor_id=row.factor_id,
        reasoning=row.reasoning,
        alternatives=tuple(Alternative.from_dict(a) for a in (row.alternatives or [])),
        created_at=row.created_at,
    )


class EstimateStore:
    """
    Store for products and their estimate records.

    Estimates are insert-only: there is no update or delete. Every call
    opens its own session and commits before returning, so a record
    inserted during a pass is visible to any later read in that pass.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
        )

    async def _run(self, operation: Awaitable[T]) -> T:
        """Apply the store timeout and map driver errors onto StoreError."""
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout_seconds)
        except StoreError as e:
            metrics.store_errors_total.labels(
                kind="invalid" if isinstance(e, StoreInvalidError) else "unavailable"
            ).inc()
            raise
        except IntegrityError as e:
            metrics.store_errors_total.labels(kind="invalid").inc()
            raise StoreInvalidError(f"Constraint violation: {e.orig}") from e
        except asyncio.TimeoutError as e:
            metrics.store_errors_total.labels(kind="unavailable").inc()
            raise StoreUnavailableError(
                f"Store call exceeded {self.timeout_seconds:.1f}s"
            ) from e
        except (OperationalError, InterfaceError, OSError) as e:
            metrics.store_errors_total.labels(kind="unavailable").inc()
            raise StoreUnavailableError(f"Store unavailable: {e}") from e
        except SQLAlchemyError as e:
            # Pool checkout timeouts, DataError and other driver failures
            metrics.store_errors_total.labels(kind="unavailable").inc()
            raise StoreUnavailableError(f"Store error: {type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------
    # Estimates
    # ------------------------------------------------------------------

    async def insert(self, record: EstimateRecord) -> int:
        """Append one estimate record and return its id."""
        return await self._run(self._insert(record))

    async def _insert(self, record: EstimateRecord) -> int:
        async with self._session_factory() as db:
            product = await db.get(Product, record.product_id)
            if product is None:
                raise StoreInvalidError(f"Unknown product id {record.product_id}")

            row = EmissionEstimate(
                product_id=record.product_id,
                method=record.method.value,
                estimated_co2e_kg=record.estimated_co2e_kg,
                confidence=record.confidence,
                factor_source=record.factor_source,
                factor_id=record.factor_id,
                reasoning=record.reasoning,
                alternatives=[a.to_dict() for a in record.alternatives] or None,
            )
            db.add(row)
            await db.commit()
            logger.debug(
                f"Stored {record.method.value} estimate for product {record.product_id}: "
                f"{record.estimated_co2e_kg} kg CO2e"
            )
            return row.id

    async def list_all_estimates(self) -> list[EstimateRecord]:
        """Full scan of estimate records, oldest first."""
        return await self._run(self._list_all_estimates())

    async def _list_all_estimates(self) -> list[EstimateRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(EmissionEstimate).order_by(EmissionEstimate.created_at, EmissionEstimate.id)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def estimates_by_product(self) -> dict[int, list[EstimateRecord]]:
        """All estimate records grouped by product id."""
        grouped: dict[int, list[EstimateRecord]] = defaultdict(list)
        for record in await self.list_all_estimates():
            grouped[record.product_id].append(record)
        return dict(grouped)

    async def best_estimate_for(self, product_id: int) -> Optional[EstimateRecord]:
        return await self._run(self._best_estimate_for(product_id))

    async def _best_estimate_for(self, product_id: int) -> Optional[EstimateRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(EmissionEstimate).where(EmissionEstimate.product_id == product_id)
            )
            return select_best_estimate(_to_record(row) for row in result.scalars().all())

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def list_all_products(self) -> list[ProductSnapshot]:
        """Full scan of products in creation order."""
        return await self._run(self._list_all_products())

    async def _list_all_products(self) -> list[ProductSnapshot]:
        async with self._session_factory() as db:
            result = await db.execute(select(Product).order_by(Product.created_at, Product.id))
            return [_to_snapshot(row) for row in result.scalars().all()]

    async def backfill_category(self, product_id: int, category: Category) -> bool:
        """Set the category of a product that has none yet."""
        return await self._run(self._backfill_category(product_id, category))

    async def _backfill_category(self, product_id: int, category: Category) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Product)
                .where(Product.id == product_id, Product.category.is_(None))
                .values(category=category.value, auto_categorized=True)
            )
            await db.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def get_preferences(self, user_id: str = DEFAULT_USER_ID) -> Optional[UserPreferences]:
        return await self._run(self._get_preferences(user_id))

    async def _get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UserPreferences).where(UserPreferences.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def ensure_preferences(self, user_id: str = DEFAULT_USER_ID) -> UserPreferences:
        """Return the user's preferences, creating defaults on first access."""
        return await self._run(self._ensure_preferences(user_id))

    async def _ensure_preferences(self, user_id: str) -> UserPreferences:
        existing = await self._get_preferences(user_id)
        if existing is not None:
            return existing

        async with self._session_factory() as db:
            prefs = UserPreferences(
                user_id=user_id,
                monthly_carbon_target=settings.default_monthly_carbon_target,
                currency=settings.default_currency,
                notifications_enabled=True,
            )
            db.add(prefs)
            try:
                await db.commit()
            except IntegrityError:
                # Created concurrently by another request
                await db.rollback()
                return await self._get_preferences(user_id)
            await db.refresh(prefs)
            return prefs
