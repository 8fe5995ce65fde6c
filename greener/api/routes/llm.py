"""Inference endpoint: carbon estimate for a single purchase."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from greener.api.deps import get_estimation_client
from greener.estimate.categories import classify
from greener.estimate.client import CarbonEstimationClient
from greener.estimate.types import Category

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/llm", tags=["llm"])


class ProductPayload(BaseModel):
    """Product fields sent for estimation."""
    name: str
    category: Optional[str] = None
    price: float = Field(default=0.0, ge=0)
    quantity: int = Field(default=1, ge=1)


class CarbonEstimateRequest(BaseModel):
    """Request model for a carbon estimate."""
    prompt: Optional[str] = None
    product: ProductPayload


class AlternativePayload(BaseModel):
    name: str
    carbonReduction: float
    priceChange: float
    sustainabilityScore: float


class CarbonEstimateResult(BaseModel):
    """Response model for a carbon estimate."""
    estimatedCo2eKg: float
    confidence: int
    reasoning: str
    alternatives: list[AlternativePayload]
    method: str


@router.post("/carbon-estimate", response_model=CarbonEstimateResult)
async def carbon_estimate(
    request: CarbonEstimateRequest,
    client: CarbonEstimationClient = Depends(get_estimation_client),
):
    """Estimate a purchase; falls back to the category heuristic if the model fails."""
    product = request.product
    category = Category.parse(product.category) or classify(product.name)
    estimate = await client.estimate_values(
        name=product.name,
        category=category,
        price=product.price,
        quantity=product.quantity,
    )
    return estimate.to_response()
