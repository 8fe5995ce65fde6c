"""Purchase view model and derived dashboard metrics."""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Optional, Sequence

from greener.config import settings
from greener.estimate.heuristics import estimate_heuristic, fallback_alternatives
from greener.estimate.store import select_best_estimate
from greener.estimate.types import (
    Alternative,
    Category,
    EstimateRecord,
    EstimationMethod,
    ProductSnapshot,
)

# Synthetic six-month trend, oldest first, relative to the current score
TREND_MULTIPLIERS = (1.2, 1.1, 1.05, 1.02, 1.01, 1.0)
RECENT_PURCHASES = 3

SORT_KEYS = ("date", "price", "emissions", "category", "name")


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


@dataclass(frozen=True)
class Purchase:
    """One purchased product joined with its effective estimate."""

    id: int
    item: str
    name: str
    store: str
    category: str
    amount: float
    carbon_score: float
    estimate_method: EstimationMethod
    confidence: int
    estimated: bool  # False when the score is a display-only heuristic
    date: date
    description: str
    alternative_options: tuple[Alternative, ...] = ()

    @property
    def alternatives(self) -> int:
        return len(self.alternative_options)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item": self.item,
            "store": self.store,
            "category": self.category,
            "amount": self.amount,
            "carbonScore": self.carbon_score,
            "estimateMethod": self.estimate_method.value,
            "confidence": self.confidence,
            "estimated": self.estimated,
            "date": self.date.isoformat(),
            "description": self.description,
            "alternatives": self.alternatives,
        }


@dataclass(frozen=True)
class CategoryBreakdown:
    category: str
    emissions: float
    percentage: int
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "emissions": self.emissions,
            "percentage": self.percentage,
            "count": self.count,
        }


@dataclass(frozen=True)
class TrendPoint:
    month: str
    emissions: float
    target: float

    def to_dict(self) -> dict[str, Any]:
        return {"month": self.month, "emissions": self.emissions, "target": self.target}


@dataclass
class DashboardMetrics:
    current_score: float = 0.0
    total_spent: float = 0.0
    total_purchases: int = 0
    total_emissions: float = 0.0
    average_score: float = 0.0
    category_data: list[CategoryBreakdown] = field(default_factory=list)
    carbon_trend_data: list[TrendPoint] = field(default_factory=list)
    recent_purchases: list[Purchase] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentScore": self.current_score,
            "totalSpent": self.total_spent,
            "totalPurchases": self.total_purchases,
            "totalEmissions": self.total_emissions,
            "averageScore": self.average_score,
            "categoryData": [c.to_dict() for c in self.category_data],
            "carbonTrendData": [t.to_dict() for t in self.carbon_trend_data],
            "recentPurchases": [p.to_dict() for p in self.recent_purchases],
        }


@dataclass
class DashboardView:
    purchases: list[Purchase]
    metrics: DashboardMetrics


@dataclass(frozen=True)
class Recommendation:
    product_id: int
    original_product: str
    recommended_product: str
    category: str
    original_price: float
    recommended_price: float
    original_carbon: float
    recommended_carbon: float
    carbon_reduction: float
    sustainability_score: float

    @property
    def carbon_saved(self) -> float:
        return round(self.original_carbon - self.recommended_carbon, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "originalProduct": self.original_product,
            "recommendedProduct": self.recommended_product,
            "category": self.category,
            "originalPrice": self.original_price,
            "recommendedPrice": self.recommended_price,
            "originalCarbon": self.original_carbon,
            "recommendedCarbon": self.recommended_carbon,
            "carbonReduction": self.carbon_reduction,
            "carbonSaved": self.carbon_saved,
            "sustainabilityScore": self.sustainability_score,
        }


def _purchase_date(product: ProductSnapshot) -> date:
    moment = product.purchased_at or product.created_at or datetime.utcnow()
    return moment.date()


def resolve_purchase(
    product: ProductSnapshot,
    records: Sequence[EstimateRecord],
    store_name: Optional[str] = None,
) -> Purchase:
    """
    Join a product with its best estimate.

    Products without any record get a heuristic score computed on the fly
    so the dashboard never shows a missing value; it is never persisted.
    """
    category = product.category or Category.OTHER
    store = product.store or store_name or settings.default_store_name
    best = select_best_estimate(records)

    if best is not None:
        score = best.estimated_co2e_kg
        method = best.method
        confidence = best.confidence
        options = best.alternatives
    else:
        score = estimate_heuristic(category, product.total_price, product.quantity)
        method = EstimationMethod.HEURISTIC
        confidence = settings.display_fallback_confidence
        options = fallback_alternatives(category)

    if product.quantity > 1:
        item = f"{product.name} (×{product.quantity})"
        description = f"{product.name} ({product.quantity} items) from {store}"
    else:
        item = product.name
        description = f"{product.name} from {store}"

    return Purchase(
        id=product.id,
        item=item,
        name=product.name,
        store=store,
        category=category.value,
        amount=round(product.total_price, 2),
        carbon_score=score,
        estimate_method=method,
        confidence=confidence,
        estimated=best is not None,
        date=_purchase_date(product),
        description=description,
        alternative_options=tuple(options),
    )


def _trend_months(today: date) -> list[str]:
    labels = []
    for offset in range(len(TREND_MULTIPLIERS) - 1, -1, -1):
        month_index = today.month - 1 - offset
        year = today.year + month_index // 12
        labels.append(date(year, month_index % 12 + 1, 1).strftime("%b"))
    return labels


def compute_metrics(
    purchases: Sequence[Purchase],
    monthly_target: Optional[float] = None,
    today: Optional[date] = None,
) -> DashboardMetrics:
    """Totals, category breakdown and trend for an already-ordered purchase list."""
    if not purchases:
        return DashboardMetrics()

    target = monthly_target if monthly_target is not None else settings.default_monthly_carbon_target
    today = today or date.today()

    total_spent = sum(p.amount for p in purchases)
    total_emissions = sum(p.carbon_score for p in purchases)

    totals: dict[str, list[float]] = {}
    for purchase in purchases:
        bucket = totals.setdefault(purchase.category, [0.0, 0])
        bucket[0] += purchase.carbon_score
        bucket[1] += 1

    category_data = [
        CategoryBreakdown(
            category=category,
            emissions=round_half_up(emissions, 1),
            percentage=int(round_half_up(emissions / total_emissions * 100)) if total_emissions else 0,
            count=int(count),
        )
        for category, (emissions, count) in totals.items()
    ]
    category_data.sort(key=lambda c: c.emissions, reverse=True)

    trend = [
        TrendPoint(month=label, emissions=round_half_up(total_emissions * factor, 1), target=target)
        for label, factor in zip(_trend_months(today), TREND_MULTIPLIERS)
    ]

    return DashboardMetrics(
        current_score=round_half_up(total_emissions, 1),
        total_spent=round_half_up(total_spent, 2),
        total_purchases=len(purchases),
        total_emissions=round_half_up(total_emissions, 1),
        average_score=round_half_up(total_emissions / len(purchases), 1),
        category_data=category_data,
        carbon_trend_data=trend,
        recent_purchases=list(purchases[:RECENT_PURCHASES]),
    )


def build_view(
    products: Sequence[ProductSnapshot],
    estimates_by_product: Mapping[int, Sequence[EstimateRecord]],
    monthly_target: Optional[float] = None,
    store_name: Optional[str] = None,
    today: Optional[date] = None,
) -> DashboardView:
    """Resolve every product, most recent first, and derive the metrics."""
    # Newest-created first so same-day purchases also list most recent first
    purchases = [
        resolve_purchase(product, estimates_by_product.get(product.id, ()), store_name)
        for product in reversed(products)
    ]
    purchases = sort_purchases(purchases, "date", descending=True)
    return DashboardView(
        purchases=purchases,
        metrics=compute_metrics(purchases, monthly_target=monthly_target, today=today),
    )


def filter_purchases(
    purchases: Sequence[Purchase],
    search: str = "",
    category: Optional[str] = None,
) -> list[Purchase]:
    """Case-insensitive search over item and store, plus an exact category filter."""
    term = (search or "").strip().lower()
    wanted = None if category in (None, "", "All") else category
    return [
        p
        for p in purchases
        if (not term or term in p.item.lower() or term in p.store.lower())
        and (wanted is None or p.category == wanted)
    ]


def sort_purchases(
    purchases: Sequence[Purchase],
    key: str = "date",
    descending: bool = False,
) -> list[Purchase]:
    """Stable sort; equal keys keep their input order in either direction."""
    if key == "date":
        sort_key = lambda p: p.date
    elif key == "price":
        sort_key = lambda p: p.amount
    elif key == "emissions":
        sort_key = lambda p: p.carbon_score
    elif key == "category":
        sort_key = lambda p: p.category
    elif key == "name":
        sort_key = lambda p: p.item.lower()
    else:
        raise ValueError(f"Unknown sort key '{key}', expected one of {', '.join(SORT_KEYS)}")
    return sorted(purchases, key=sort_key, reverse=descending)


def build_recommendations(purchases: Sequence[Purchase], limit: int = 10) -> list[Recommendation]:
    """Greener alternatives for the purchases, largest absolute saving first."""
    recommendations = []
    for purchase in purchases:
        for option in purchase.alternative_options:
            reduction = max(0.0, min(100.0, option.carbon_reduction))
            recommendations.append(
                Recommendation(
                    product_id=purchase.id,
                    original_product=purchase.name,
                    recommended_product=option.name,
                    category=purchase.category,
                    original_price=purchase.amount,
                    recommended_price=round(purchase.amount * (1 + option.price_change / 100), 2),
                    original_carbon=purchase.carbon_score,
                    recommended_carbon=round(purchase.carbon_score * (1 - reduction / 100), 2),
                    carbon_reduction=reduction,
                    sustainability_score=option.sustainability_score,
                )
            )
    recommendations.sort(key=lambda r: r.carbon_saved, reverse=True)
    return recommendations[:limit]
