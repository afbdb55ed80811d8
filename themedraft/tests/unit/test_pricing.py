from __future__ import annotations

from decimal import Decimal

from themedraft.services.costs import calculate_cost


def test_free_model_costs_nothing() -> None:
    assert calculate_cost("google/gemini-2.0-flash-exp:free", 10_000, 10_000) == Decimal("0")


def test_paid_model_uses_per_million_rates() -> None:
    cost = calculate_cost("google/gemini-2.0-flash", 1_000_000, 500_000)
    assert cost == Decimal("0.1") + Decimal("0.2")


def test_unknown_model_prices_at_zero() -> None:
    assert calculate_cost("vendor/unknown-model", 1_000, 1_000) == Decimal("0")
