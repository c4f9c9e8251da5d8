from decimal import Decimal
from types import SimpleNamespace

import pytest

from app import pricing


def make_pizza(base_price="299", ingredients=("tomato", "mozzarella", "basil"), sizes=None):
    if sizes is None:
        sizes = [
            SimpleNamespace(name="small", price_multiplier=Decimal("1")),
            SimpleNamespace(name="medium", price_multiplier=Decimal("1.3")),
            SimpleNamespace(name="large", price_multiplier=Decimal("1.6")),
        ]
    return SimpleNamespace(base_price=Decimal(base_price), ingredients=list(ingredients), sizes=sizes)


def test_margherita_medium_unit_price():
    assert pricing.compute_unit_price(make_pizza(), "medium") == Decimal("503.70")


def test_size_name_is_case_insensitive():
    assert pricing.compute_unit_price(make_pizza(), "Medium") == Decimal("503.70")


def test_large_size_uses_its_multiplier_and_extra():
    # 299 * 1.6 + 30 + 95
    assert pricing.compute_unit_price(make_pizza(), "large") == Decimal("603.40")


def test_unknown_size_falls_back_to_unit_multiplier_and_medium_extra():
    # 299 * 1 + 30 + 85
    assert pricing.compute_unit_price(make_pizza(), "family") == Decimal("414.00")


def test_no_ingredients_adds_nothing():
    pizza = make_pizza(ingredients=())
    # 299 * 1.3 + 85
    assert pricing.compute_unit_price(pizza, "medium") == Decimal("473.70")


def test_negative_base_price_is_treated_as_zero():
    pizza = make_pizza(base_price="-50", ingredients=())
    assert pricing.compute_unit_price(pizza, "small") == Decimal("75.00")


def test_rounding_is_half_up():
    pizza = make_pizza(base_price="0.01", ingredients=(), sizes=[
        SimpleNamespace(name="medium", price_multiplier=Decimal("0.5")),
    ])
    # 0.005 + 85 -> 85.01
    assert pricing.compute_unit_price(pizza, "medium") == Decimal("85.01")


def test_fallback_price_adds_size_extra():
    assert pricing.compute_fallback_unit_price("65", "medium") == Decimal("150.00")
    assert pricing.compute_fallback_unit_price(65.5, "xl") == Decimal("165.50")


def test_fallback_price_unknown_size_adds_nothing():
    assert pricing.compute_fallback_unit_price("65", "family") == Decimal("65.00")
    assert pricing.compute_fallback_unit_price("65", None) == Decimal("65.00")


@pytest.mark.parametrize("value", [None, "abc", float("nan"), float("inf"), True])
def test_to_decimal_rejects_garbage(value):
    assert pricing.to_decimal(value) == Decimal("0")


@pytest.mark.parametrize("quantity, expected", [(3, 3), (1, 1), (0, 1), (-2, 1), (None, 1), ("x", 1)])
def test_normalize_quantity(quantity, expected):
    assert pricing.normalize_quantity(quantity) == expected


def test_line_and_order_totals():
    line_a = pricing.compute_line_total(Decimal("503.70"), 2)
    line_b = pricing.compute_line_total(Decimal("150.00"), 1)
    lines = [SimpleNamespace(total_price=line_a), SimpleNamespace(total_price=line_b)]
    assert line_a == Decimal("1007.40")
    assert pricing.compute_order_total(lines) == Decimal("1157.40")


def test_empty_order_total_is_zero():
    assert pricing.compute_order_total([]) == Decimal("0.00")


def test_pricing_is_deterministic():
    pizza = make_pizza()
    prices = {pricing.compute_unit_price(pizza, "medium") for _ in range(5)}
    assert prices == {Decimal("503.70")}
