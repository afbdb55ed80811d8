from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging


logger = logging.getLogger(__name__)

_PER_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    # Per-million-token USD rates for one backend model.
    model_id: str
    name: str
    input_per_million_usd: Decimal
    output_per_million_usd: Decimal


MODEL_CATALOG: dict[str, ModelPricing] = {
    "google/gemini-2.0-flash-exp:free": ModelPricing(
        model_id="google/gemini-2.0-flash-exp:free",
        name="Gemini 2.0 Flash (Free)",
        input_per_million_usd=Decimal("0"),
        output_per_million_usd=Decimal("0"),
    ),
    "google/gemini-2.0-flash": ModelPricing(
        model_id="google/gemini-2.0-flash",
        name="Gemini 2.0 Flash",
        input_per_million_usd=Decimal("0.1"),
        output_per_million_usd=Decimal("0.4"),
    ),
}


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """Estimate the USD cost of one backend call.

    Unknown models price at zero and log a warning so accounting never blocks
    job completion.
    """
    pricing = MODEL_CATALOG.get(model)
    if pricing is None:
        logger.warning("pricing_unknown_model model=%s", model)
        return Decimal("0")
    input_cost = (Decimal(max(input_tokens, 0)) / _PER_MILLION) * pricing.input_per_million_usd
    output_cost = (Decimal(max(output_tokens, 0)) / _PER_MILLION) * pricing.output_per_million_usd
    return input_cost + output_cost
