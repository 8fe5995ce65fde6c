"""LLM-backed carbon estimation with deterministic heuristic fallback."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from greener import metrics
from greener.ai.llm_service import LLMService, llm_service
from greener.ai.prompts import CARBON_ESTIMATE_SYSTEM_PROMPT, CarbonEstimatePrompt
from greener.config import settings
from greener.estimate.heuristics import clamp, estimate_heuristic, fallback_alternatives
from greener.estimate.types import (
    CO2E_MAX_KG,
    CO2E_MIN_KG,
    Alternative,
    Category,
    EstimateRecord,
    EstimationMethod,
    ProductSnapshot,
)

logger = logging.getLogger(__name__)

MODEL_CONFIDENCE_MIN = 50
MODEL_CONFIDENCE_MAX = 100
DEFAULT_MODEL_CONFIDENCE = 75
DEFAULT_REASONING = "AI-based lifecycle analysis"
MAX_ALTERNATIVES = 3


class EstimationClientError(RuntimeError):
    """The model path failed (network, timeout, status or validation)."""
    pass


class AlternativeResponse(BaseModel):
    """One alternative as returned by the model."""

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    name: str
    carbonReduction: float = 0.0
    priceChange: float = 0.0
    sustainabilityScore: float = 5.0

    @field_validator("sustainabilityScore")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return clamp(v, 1.0, 10.0)

    def to_alternative(self) -> Alternative:
        return Alternative(
            name=self.name,
            carbon_reduction=self.carbonReduction,
            price_change=self.priceChange,
            sustainability_score=self.sustainabilityScore,
        )


class CarbonEstimateResponse(BaseModel):
    """
    Sanitized model response.

    ``estimatedCo2eKg`` is required and clamped to [0.1, 50]; ``confidence``
    defaults to 75 and is clamped to [50, 100]; at most three alternatives
    are kept.
    """

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    estimatedCo2eKg: float
    confidence: float = DEFAULT_MODEL_CONFIDENCE
    reasoning: Optional[str] = Field(default=None, validate_default=True)
    alternatives: list[AlternativeResponse] = []

    @field_validator("estimatedCo2eKg")
    @classmethod
    def clamp_co2e(cls, v: float) -> float:
        return clamp(v, CO2E_MIN_KG, CO2E_MAX_KG)

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v: Any) -> Any:
        return DEFAULT_MODEL_CONFIDENCE if v is None else v

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return clamp(v, MODEL_CONFIDENCE_MIN, MODEL_CONFIDENCE_MAX)

    @field_validator("reasoning")
    @classmethod
    def default_reasoning(cls, v: Optional[str]) -> str:
        return v.strip() if v and v.strip() else DEFAULT_REASONING

    @field_validator("alternatives", mode="before")
    @classmethod
    def truncate_alternatives(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return v[:MAX_ALTERNATIVES]
        return v


@dataclass(frozen=True)
class CarbonEstimate:
    """An estimate before it is attached to a stored product."""

    estimated_co2e_kg: float
    confidence: int
    method: EstimationMethod
    factor_source: str
    reasoning: str
    alternatives: tuple[Alternative, ...] = field(default_factory=tuple)
    category: Category = Category.OTHER

    def to_record(self, product_id: int) -> EstimateRecord:
        if self.method is EstimationMethod.HEURISTIC:
            factor_id = f"heuristic-{self.category.slug}"
        else:
            factor_id = f"{self.method.value}-{product_id}"
        return EstimateRecord(
            product_id=product_id,
            estimated_co2e_kg=self.estimated_co2e_kg,
            confidence=self.confidence,
            method=self.method,
            factor_source=self.factor_source,
            factor_id=factor_id,
            reasoning=self.reasoning,
            alternatives=self.alternatives,
        )

    def to_response(self) -> dict[str, Any]:
        """Wire shape of the inference endpoint."""
        return {
            "estimatedCo2eKg": self.estimated_co2e_kg,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "alternatives": [a.to_dict() for a in self.alternatives],
            "method": self.method.value,
        }


class CarbonEstimationClient:
    """
    Estimates a purchase's footprint with the LLM.

    Never raises under normal operation: any failure of the model path
    yields a heuristic estimate with reduced confidence.
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        fallback_confidence: Optional[int] = None,
    ):
        self.llm = llm or llm_service
        self.fallback_confidence = (
            fallback_confidence
            if fallback_confidence is not None
            else settings.heuristic_fallback_confidence
        )

    async def estimate(self, product: ProductSnapshot) -> EstimateRecord:
        """Estimate a stored product and return a record ready to insert."""
        category = product.category or Category.OTHER
        result = await self.estimate_values(
            name=product.name,
            category=category,
            price=product.total_price,
            quantity=product.quantity,
        )
        return result.to_record(product.id)

    async def estimate_values(
        self,
        name: str,
        category: Optional[Category],
        price: float,
        quantity: int = 1,
    ) -> CarbonEstimate:
        category = category or Category.OTHER

        if not getattr(self.llm, "configured", True):
            logger.warning("OpenAI API key not configured, using fallback estimation")
            return self.heuristic_estimate(category, price, quantity)

        try:
            return await self._estimate_with_model(name, category, price, quantity)
        except EstimationClientError as e:
            metrics.llm_requests_total.labels(status="failure").inc()
            logger.warning(f"LLM estimation failed for '{name[:40]}', using category fallback: {e}")
            return self.heuristic_estimate(category, price, quantity)

    async def _estimate_with_model(
        self,
        name: str,
        category: Category,
        price: float,
        quantity: int,
    ) -> CarbonEstimate:
        start = time.monotonic()
        try:
            prompt = CarbonEstimatePrompt(
                name=name,
                category=category.value,
                price=max(price, 0.0),
                quantity=max(quantity, 1),
            )
            response = await self.llm.call_llm_json(
                prompt=prompt.to_prompt(),
                system_prompt=CARBON_ESTIMATE_SYSTEM_PROMPT,
                temperature=settings.llm_temperature,
            )
            parsed = CarbonEstimateResponse.model_validate(response.data)
        except Exception as e:
            raise EstimationClientError(f"{type(e).__name__}: {e}") from e
        finally:
            metrics.llm_request_duration_seconds.observe(time.monotonic() - start)

        method = EstimationMethod.CACHED if response.cached else EstimationMethod.MODEL
        metrics.llm_requests_total.labels(
            status="cache_hit" if response.cached else "success"
        ).inc()
        logger.info(
            f"AI estimate for {name[:40]}: {parsed.estimatedCo2eKg:.2f} kg CO2e "
            f"({parsed.confidence:.0f}% confidence, {method.value})"
        )
        return CarbonEstimate(
            estimated_co2e_kg=round(parsed.estimatedCo2eKg, 2),
            confidence=int(round(parsed.confidence)),
            method=method,
            factor_source=f"llm-{getattr(self.llm, 'model', 'openai')}",
            reasoning=parsed.reasoning,
            alternatives=tuple(a.to_alternative() for a in parsed.alternatives),
            category=category,
        )

    def heuristic_estimate(
        self,
        category: Optional[Category],
        price: float,
        quantity: int = 1,
    ) -> CarbonEstimate:
        category = category or Category.OTHER
        return CarbonEstimate(
            estimated_co2e_kg=estimate_heuristic(category, price, quantity),
            confidence=self.fallback_confidence,
            method=EstimationMethod.HEURISTIC,
            factor_source="category-fallback",
            reasoning=(
                f"Category-based estimate for {category.value.lower()} products, "
                "considering typical manufacturing and supply chain emissions."
            ),
            alternatives=fallback_alternatives(category),
            category=category,
        )
