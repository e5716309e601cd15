from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class ProfitBreakdown:
    base: Decimal
    loyalty: Decimal
    domestic_shipping: Decimal


@dataclass(frozen=True)
class ProfitResult:
    expected_profit: Decimal
    breakdown: ProfitBreakdown


def to_decimal(value: Any) -> Decimal:
    """None/빈 값은 0으로 취급합니다. float는 문자열 경유로 변환해 이진 오차를 피합니다."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_profit(
    sale_price: Any,
    replacement_cost: Any,
    loyalty_credit: Any = 0,
    domestic_shipping_cost: Any = 0,
    include_loyalty: bool = False,
    include_domestic_shipping: bool = False,
) -> ProfitResult:
    """
    예상 수익 계산 (순수 함수).

    expected = (판매가 - 매입가) + 포인트(포함 시) - 국내 배송비(포함 시)

    제외된 항목은 breakdown에도 0으로 남깁니다.
    """
    sale = to_decimal(sale_price)
    cost = to_decimal(replacement_cost)
    loyalty = to_decimal(loyalty_credit)
    shipping = to_decimal(domestic_shipping_cost)

    base = sale - cost
    loyalty_component = loyalty if include_loyalty else Decimal("0")
    shipping_component = shipping if include_domestic_shipping else Decimal("0")

    return ProfitResult(
        expected_profit=base + loyalty_component - shipping_component,
        breakdown=ProfitBreakdown(base=base, loyalty=loyalty_component, domestic_shipping=shipping_component),
    )


def calculate_shipping_days(estimated_delivery: datetime, reference: datetime | None = None) -> int:
    """도착 예정일까지 남은 일수 (올림, 0 미만은 0)"""
    ref = reference or datetime.now(timezone.utc)
    if (estimated_delivery.tzinfo is None) != (ref.tzinfo is None):
        # naive 값은 UTC로 간주
        if estimated_delivery.tzinfo is None:
            estimated_delivery = estimated_delivery.replace(tzinfo=timezone.utc)
        else:
            ref = ref.replace(tzinfo=timezone.utc)

    days = (estimated_delivery - ref).total_seconds() / 86400
    return max(0, math.ceil(days))
