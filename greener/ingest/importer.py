"""Import merchant purchase-history exports into products."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greener.db.models import Product, Transaction
from greener.estimate.categories import classify

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Counts from one import run."""
    transactions_created: int = 0
    transactions_skipped: int = 0
    products_created: int = 0
    errors: list[str] = field(default_factory=list)


def _decimal(value: Any, default: str = "0") -> Decimal:
    try:
        return Decimal(str(value if value not in (None, "") else default))
    except InvalidOperation:
        return Decimal(default)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored naive UTC like the rest of the schema
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def import_purchase_history(
    data: dict[str, Any],
    session_factory: async_sessionmaker[AsyncSession],
) -> ImportResult:
    """
    Load an export shaped like ``{"merchant": {...}, "transactions": [...]}``.

    Each product is classified by name on the way in. Transactions already
    imported for the same merchant are skipped, so re-running is safe.
    """
    result = ImportResult()
    merchant = str((data.get("merchant") or {}).get("name") or "Unknown")

    for raw in data.get("transactions") or []:
        external_id = str(raw.get("id", ""))
        if not external_id:
            result.errors.append("Transaction without id")
            continue

        async with session_factory() as db:
            existing = await db.execute(
                select(Transaction.id).where(
                    Transaction.merchant == merchant,
                    Transaction.external_id == external_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                result.transactions_skipped += 1
                continue

            ordered_at = _parse_datetime(raw.get("datetime"))
            price = raw.get("price") or {}
            transaction = Transaction(
                external_id=external_id,
                merchant=merchant,
                order_datetime=ordered_at,
                total_amount=_decimal(price.get("total")),
                currency=str(price.get("currency") or "USD"),
                status=raw.get("order_status"),
                raw_json=raw,
            )
            db.add(transaction)
            await db.flush()

            created = 0
            for item in raw.get("products") or []:
                name = (item.get("name") or "").strip()
                if not name:
                    result.errors.append(f"Transaction {external_id}: product without name")
                    continue
                item_price = item.get("price") or {}
                quantity = max(int(item.get("quantity") or 1), 1)
                total = _decimal(item_price.get("total"))
                unit_price = _decimal(item_price.get("unit_price"), default=str(total / quantity))
                db.add(
                    Product(
                        transaction_id=transaction.id,
                        external_id=item.get("external_id"),
                        name=name,
                        store=merchant,
                        url=item.get("url"),
                        category=classify(name).value,
                        auto_categorized=True,
                        quantity=quantity,
                        unit_price=unit_price,
                        total=total,
                        purchased_at=ordered_at,
                    )
                )
                created += 1

            await db.commit()
            result.transactions_created += 1
            result.products_created += created

    logger.info(
        f"Imported {result.products_created} products from {result.transactions_created} "
        f"transactions ({result.transactions_skipped} already present)"
    )
    return result
