from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal

from dropship_worker.models import AutoFulfillmentMode
from dropship_worker.services.profit import to_decimal


class Decision(str, enum.Enum):
    SKIP = "SKIP"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    DRY_RUN = "DRY_RUN"
    AUTO_FULFILL = "AUTO_FULFILL"


class DecisionReason(str, enum.Enum):
    PROFIT_BELOW_MIN = "PROFIT_BELOW_MIN"
    SHIPPING_DAYS_TOO_LONG = "SHIPPING_DAYS_TOO_LONG"
    INACTIVE_SHOP = "INACTIVE_SHOP"
    MANUAL_MODE = "MANUAL_MODE"
    REVIEW_BAND = "REVIEW_BAND"
    DRY_RUN_ONLY = "DRY_RUN_ONLY"


@dataclass(frozen=True)
class DecisionInput:
    is_active: bool
    is_dry_run: bool
    mode: AutoFulfillmentMode
    min_profit: Decimal
    max_shipping_days: int
    review_band_percent: Decimal | None
    profit: Decimal
    shipping_days: int


@dataclass(frozen=True)
class DecisionResult:
    decision: Decision
    reason: DecisionReason | None = None


def classify_fulfillment_decision(data: DecisionInput) -> DecisionResult:
    """
    주문 처리 방향을 결정합니다. 먼저 걸리는 규칙이 이깁니다.

    1~2. 수익/배송일 가드레일 (모드와 무관하게 항상 우선)
    3~5. 샵 상태 / 자율 모드 / 리뷰 밴드
    6~7. 드라이런 또는 자동 구매
    """
    profit = to_decimal(data.profit)
    min_profit = to_decimal(data.min_profit)

    if profit < min_profit:
        return DecisionResult(Decision.SKIP, DecisionReason.PROFIT_BELOW_MIN)

    if data.shipping_days > data.max_shipping_days:
        return DecisionResult(Decision.SKIP, DecisionReason.SHIPPING_DAYS_TOO_LONG)

    if not data.is_active:
        return DecisionResult(Decision.MANUAL_REVIEW, DecisionReason.INACTIVE_SHOP)

    if data.mode == AutoFulfillmentMode.MANUAL_ONLY:
        return DecisionResult(Decision.MANUAL_REVIEW, DecisionReason.MANUAL_MODE)

    if data.mode == AutoFulfillmentMode.AUTO_WITH_REVIEW_BAND and _in_review_band(
        profit, min_profit, data.review_band_percent
    ):
        return DecisionResult(Decision.MANUAL_REVIEW, DecisionReason.REVIEW_BAND)

    if data.is_dry_run:
        return DecisionResult(Decision.DRY_RUN, DecisionReason.DRY_RUN_ONLY)

    return DecisionResult(Decision.AUTO_FULFILL)


def _in_review_band(profit: Decimal, min_profit: Decimal, band_percent: Decimal | None) -> bool:
    # 최소 수익이 0 이하이면 비율 계산이 의미가 없으므로 밴드를 적용하지 않음
    if band_percent is None:
        return False
    band = to_decimal(band_percent)
    if band <= 0 or min_profit <= 0:
        return False
    margin_over_min = (profit - min_profit) / min_profit
    return Decimal("0") <= margin_over_min <= band / Decimal("100")
