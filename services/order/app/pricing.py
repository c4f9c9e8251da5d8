"""
Order Service — 価格計算エンジン

クライアントが送ってくる金額は参考値(advisory)として扱い、
注文作成時に必ずサーバー側で再計算する。

    単価 = round2(基本価格 × サイズ倍率 + 具材数 × INGREDIENT_MODIFIER + SIZE_EXTRA[サイズ])

カタログから商品が消えている場合は「劣化パス」:
クライアント提示の単価 + サイズ加算のみ(具材数は不明なので加算しない)。
"""

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

INGREDIENT_MODIFIER = Decimal("10")

SIZE_EXTRA: dict[str, Decimal] = {
    "small": Decimal("75"),
    "medium": Decimal("85"),
    "large": Decimal("95"),
    "xl": Decimal("100"),
}
DEFAULT_SIZE = "medium"

_CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """float / int / str を誤差なく Decimal に変換する。変換できなければ 0。"""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        d = Decimal(str(value))
    except ArithmeticError:
        return Decimal("0")
    return d if d.is_finite() else Decimal("0")


def normalize_quantity(quantity: Any) -> int:
    """1 未満・数値でない数量は 1 に丸める。"""
    try:
        q = int(quantity)
    except (TypeError, ValueError):
        return 1
    return q if q >= 1 else 1


def _size_key(size: str | None) -> str:
    return (size or "").strip().lower()


def size_multiplier(pizza: Any, size: str | None) -> Decimal:
    key = _size_key(size)
    for s in getattr(pizza, "sizes", None) or []:
        if (s.name or "").lower() == key:
            multiplier = to_decimal(s.price_multiplier)
            return multiplier if multiplier > 0 else Decimal("1")
    return Decimal("1")


def compute_unit_price(pizza: Any, size: str | None) -> Decimal:
    """カタログ情報から 1 個あたりの価格を計算する。"""
    base_price = max(to_decimal(pizza.base_price), Decimal("0"))
    ingredient_count = len(pizza.ingredients or [])
    extra = SIZE_EXTRA.get(_size_key(size), SIZE_EXTRA[DEFAULT_SIZE])
    return round2(
        base_price * size_multiplier(pizza, size)
        + ingredient_count * INGREDIENT_MODIFIER
        + extra
    )


def compute_fallback_unit_price(client_unit_price: Any, size: str | None) -> Decimal:
    """劣化パス: カタログに無い商品の単価。未知のサイズは加算 0。"""
    unit = max(to_decimal(client_unit_price), Decimal("0"))
    return round2(unit + SIZE_EXTRA.get(_size_key(size), Decimal("0")))


def compute_line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return round2(to_decimal(unit_price) * quantity)


def compute_order_total(items: Iterable[Any]) -> Decimal:
    total = Decimal("0.00")
    for line in items:
        total += to_decimal(line.total_price)
    return round2(total)
