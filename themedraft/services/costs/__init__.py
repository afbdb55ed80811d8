from __future__ import annotations

# Re-export cost services for centralized imports.

from themedraft.services.costs.pricing import MODEL_CATALOG, ModelPricing, calculate_cost

__all__ = [
    "MODEL_CATALOG",
    "ModelPricing",
    "calculate_cost",
]
