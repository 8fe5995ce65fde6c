#!/usr/bin/env python3
"""
Import a merchant purchase-history export and optionally estimate it.

Schema of the export JSON:
- merchant: {"id": ..., "name": "Amazon"}
- transactions: list of orders, each with
  - id, datetime (ISO 8601), order_status
  - price: {"total": "12.34", "currency": "USD"}
  - products: list of {external_id, name, quantity, url,
    price: {"unit_price": "...", "total": "..."}}

Usage:
    python scripts/import_purchases.py purchases.json [--estimate]
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from greener.db.session import AsyncSessionLocal, init_db
from greener.estimate.store import EstimateStore
from greener.ingest.importer import import_purchase_history
from greener.logging_config import setup_logging
from greener.worker.orchestrator import EstimationOrchestrator


async def main(path: Path, estimate: bool) -> int:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {path}: {e}")
        return 1

    try:
        await init_db()
        result = await import_purchase_history(data, AsyncSessionLocal)
    except Exception as e:
        print(f"Error: import failed: {e}")
        print("Make sure the database is running and DATABASE_URL is correct.")
        return 1

    print(
        f"Imported {result.products_created} products from "
        f"{result.transactions_created} transactions "
        f"({result.transactions_skipped} already present)"
    )
    for error in result.errors[:10]:
        print(f"  ! {error}")

    if estimate:
        orchestrator = EstimationOrchestrator(EstimateStore(AsyncSessionLocal))
        summary = await orchestrator.run_estimation_pass()
        print(json.dumps(summary.to_dict(), indent=2))
        if not summary.success:
            return 1
    return 0


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if not args or "--help" in sys.argv:
        print("Usage: python scripts/import_purchases.py EXPORT.json [--estimate]")
        print("")
        print("Options:")
        print("  --estimate  Run an estimation pass after importing")
        sys.exit(0 if "--help" in sys.argv else 1)

    setup_logging()
    sys.exit(asyncio.run(main(Path(args[0]), "--estimate" in sys.argv)))
