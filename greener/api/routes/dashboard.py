"""Dashboard API endpoints for the UI."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from greener.api.deps import get_store
from greener.dashboard.purchases import (
    SORT_KEYS,
    DashboardView,
    build_recommendations,
    build_view,
    filter_purchases,
    sort_purchases,
)
from greener.estimate.store import EstimateStore

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


async def _load_view(store: EstimateStore) -> DashboardView:
    products = await store.list_all_products()
    estimates = await store.estimates_by_product()
    prefs = await store.ensure_preferences()
    return build_view(products, estimates, monthly_target=prefs.monthly_carbon_target)


@router.get("/purchases")
async def get_purchases(
    search: str = "",
    category: Optional[str] = None,
    sort: Optional[str] = Query(default=None, description=f"One of {', '.join(SORT_KEYS)}"),
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    store: EstimateStore = Depends(get_store),
):
    """Purchase history joined with the best available carbon estimate."""
    view = await _load_view(store)
    purchases = filter_purchases(view.purchases, search=search, category=category)
    if sort:
        if sort not in SORT_KEYS:
            raise HTTPException(status_code=422, detail=f"Unknown sort key: {sort}")
        purchases = sort_purchases(purchases, sort, descending=order == "desc")

    categories = ["All", *dict.fromkeys(p.category for p in view.purchases)]
    return {
        "total": len(view.purchases),
        "count": len(purchases),
        "categories": categories,
        "purchases": [p.to_dict() for p in purchases],
    }


@router.get("/metrics")
async def get_metrics(store: EstimateStore = Depends(get_store)):
    """Totals, category breakdown and trend."""
    view = await _load_view(store)
    return view.metrics.to_dict()


@router.get("/recommendations")
async def get_recommendations(
    limit: int = Query(default=10, ge=1, le=50),
    store: EstimateStore = Depends(get_store),
):
    """Greener alternatives to recent purchases."""
    view = await _load_view(store)
    return [r.to_dict() for r in build_recommendations(view.purchases, limit=limit)]
