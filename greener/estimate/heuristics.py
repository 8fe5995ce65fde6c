"""Deterministic category-based CO2e estimates."""

import math
from typing import Optional

from greener.estimate.types import Alternative, Category

HEURISTIC_MIN_KG = 0.5
HEURISTIC_MAX_KG = 15.0

# kg CO2e per dollar spent
CATEGORY_MULTIPLIERS: dict[Category, float] = {
    Category.ELECTRONICS: 0.008,
    Category.FASHION: 0.006,
    Category.HEALTH_PERSONAL_CARE: 0.003,
    Category.HOME_GARDEN: 0.004,
    Category.OTHER: 0.005,
}
DEFAULT_MULTIPLIER = 0.005

FALLBACK_ALTERNATIVES: dict[Category, tuple[Alternative, ...]] = {
    Category.ELECTRONICS: (
        Alternative("Refurbished/certified pre-owned version", 65, -30, 8.5),
        Alternative("Energy Star certified alternative", 25, 5, 7.8),
    ),
    Category.FASHION: (
        Alternative("Organic/sustainable material version", 45, 15, 9.0),
        Alternative("Second-hand/vintage alternative", 85, -50, 9.5),
    ),
    Category.HEALTH_PERSONAL_CARE: (
        Alternative("Organic/natural alternative", 35, 20, 8.2),
        Alternative("Concentrated/refillable version", 50, -15, 8.8),
    ),
    Category.HOME_GARDEN: (
        Alternative("Sustainable material alternative", 40, 10, 8.3),
        Alternative("Local/domestic version", 30, 5, 7.9),
    ),
}
GENERIC_ALTERNATIVES = (Alternative("Eco-friendly alternative", 35, 10, 8.0),)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def estimate_heuristic(
    category: Optional[Category],
    total_price: float,
    quantity: int = 1,
) -> float:
    """
    Estimate kg CO2e from spend.

    ``clamp(total_price * multiplier * quantity, 0.5, 15)`` rounded to one
    decimal. No randomness: identical inputs always give identical output.
    """
    multiplier = CATEGORY_MULTIPLIERS.get(category, DEFAULT_MULTIPLIER)
    raw = float(total_price) * multiplier * int(quantity)
    if math.isnan(raw):
        raw = HEURISTIC_MIN_KG
    return round(clamp(raw, HEURISTIC_MIN_KG, HEURISTIC_MAX_KG), 1)


def fallback_alternatives(category: Optional[Category]) -> tuple[Alternative, ...]:
    """Category-appropriate greener alternatives for the heuristic path."""
    return FALLBACK_ALTERNATIVES.get(category, GENERIC_ALTERNATIVES)
