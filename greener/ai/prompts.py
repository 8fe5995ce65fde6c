"""Centralized prompt templates for LLM interactions."""

from typing import Optional

from pydantic import BaseModel, Field

CARBON_ESTIMATE_SYSTEM_PROMPT = """You are an expert environmental scientist specializing in product lifecycle carbon footprint analysis.

Your task is to estimate the total carbon footprint (CO2 equivalent in kg) for consumer products, considering:
- Manufacturing/production emissions
- Raw material extraction and processing
- Packaging materials
- Transportation/shipping (assume average global supply chain)
- End-of-life disposal impact

Provide realistic, research-based estimates. Be conservative but accurate.

Respond ONLY in valid JSON format with this exact structure:
{
  "estimatedCo2eKg": number,
  "confidence": number (0-100),
  "reasoning": "brief explanation of calculation factors",
  "alternatives": [
    {
      "name": "specific sustainable alternative product",
      "carbonReduction": number (percentage reduction),
      "priceChange": number (percentage price change, negative for cheaper),
      "sustainabilityScore": number (1-10)
    }
  ]
}
Include at most 3 alternatives."""


class CarbonEstimatePrompt(BaseModel):
    """Prompt schema for a single purchase carbon estimate."""

    name: str
    category: Optional[str] = None
    price: float = Field(ge=0)
    quantity: int = Field(default=1, ge=1)

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        return "\n".join(
            [
                "Analyze this product purchase:",
                "",
                f"Product Name: {self.name}",
                f"Category: {self.category or 'Other'}",
                f"Purchase Price: ${self.price:.2f}",
                f"Quantity: {self.quantity}",
                "",
                "Estimate the total carbon footprint in kg CO2 equivalent for this purchase.",
            ]
        )
