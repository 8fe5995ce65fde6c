"""Shared domain types for the carbon estimation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Band for any persisted estimate (the model path clamps to exactly this)
CO2E_MIN_KG = 0.1
CO2E_MAX_KG = 50.0

CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 100


class Category(str, Enum):
    """Closed set of product groupings used to key heuristic multipliers."""

    FASHION = "Fashion"
    ELECTRONICS = "Electronics"
    HEALTH_PERSONAL_CARE = "Health & Personal Care"
    HOME_GARDEN = "Home & Garden"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Category"]:
        """Map a stored category string back to the enum, None if unknown."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def slug(self) -> str:
        return self.value.lower().replace(" & ", "-").replace(" ", "-")


class EstimationMethod(str, Enum):
    """Where an estimate came from."""

    HEURISTIC = "heuristic"
    MODEL = "model"
    CACHED = "cached"

    @property
    def precedence(self) -> int:
        """Higher wins when selecting the best estimate for a product."""
        return _METHOD_PRECEDENCE[self]


_METHOD_PRECEDENCE = {
    EstimationMethod.MODEL: 3,
    EstimationMethod.CACHED: 2,
    EstimationMethod.HEURISTIC: 1,
}


@dataclass(frozen=True)
class Alternative:
    """A greener alternative suggested for a purchase."""

    name: str
    carbon_reduction: float  # percent
    price_change: float  # percent, negative is cheaper
    sustainability_score: float  # 1-10

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "carbonReduction": self.carbon_reduction,
            "priceChange": self.price_change,
            "sustainabilityScore": self.sustainability_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alternative":
        return cls(
            name=str(data.get("name", "")),
            carbon_reduction=float(data.get("carbonReduction", 0.0)),
            price_change=float(data.get("priceChange", 0.0)),
            sustainability_score=float(data.get("sustainabilityScore", 0.0)),
        )


@dataclass(frozen=True)
class ProductSnapshot:
    """Read-only view of a purchased product."""

    id: int
    name: str
    category: Optional[Category]
    unit_price: float
    quantity: int
    total_price: float
    transaction_id: Optional[int] = None
    store: Optional[str] = None
    purchased_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class EstimateRecord:
    """
    One CO2e estimate for a product.

    Records are immutable: corrections are new records. ``id`` and
    ``created_at`` are assigned by the store on insert.
    """

    product_id: int
    estimated_co2e_kg: float
    confidence: int
    method: EstimationMethod
    factor_source: str
    factor_id: str
    reasoning: Optional[str] = None
    alternatives: tuple[Alternative, ...] = field(default_factory=tuple)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not CO2E_MIN_KG <= self.estimated_co2e_kg <= CO2E_MAX_KG:
            raise ValueError(
                f"estimated_co2e_kg {self.estimated_co2e_kg} outside "
                f"[{CO2E_MIN_KG}, {CO2E_MAX_KG}]"
            )
        if not CONFIDENCE_MIN <= self.confidence <= CONFIDENCE_MAX:
            raise ValueError(f"confidence {self.confidence} outside [0, 100]")
