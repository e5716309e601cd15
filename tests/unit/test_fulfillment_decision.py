"""
주문 처리 결정 엔진 단위 테스트

규칙 우선순위: 수익 가드레일 → 배송일 가드레일 → 샵 비활성 → 수동 모드 → 리뷰 밴드 → 드라이런 → 자동 구매
"""
from dataclasses import replace
from decimal import Decimal

import pytest

from dropship_worker.models import AutoFulfillmentMode
from dropship_worker.services.fulfillment_decision import (
    Decision,
    DecisionInput,
    DecisionReason,
    classify_fulfillment_decision,
)
from dropship_worker.services.profit import calculate_profit


@pytest.fixture
def base_input():
    """모든 가드레일을 통과하는 AUTO_STRICT 입력"""
    return DecisionInput(
        is_active=True,
        is_dry_run=False,
        mode=AutoFulfillmentMode.AUTO_STRICT,
        min_profit=Decimal("1000"),
        max_shipping_days=7,
        review_band_percent=None,
        profit=Decimal("3000"),
        shipping_days=3,
    )


class TestGuardrails:

    def test_profit_below_min_skips(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, profit=Decimal("999.99")))
        assert result.decision == Decision.SKIP
        assert result.reason == DecisionReason.PROFIT_BELOW_MIN

    def test_profit_equal_to_min_passes(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, profit=Decimal("1000")))
        assert result.decision == Decision.AUTO_FULFILL

    def test_shipping_too_long_skips(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, shipping_days=8))
        assert result.decision == Decision.SKIP
        assert result.reason == DecisionReason.SHIPPING_DAYS_TOO_LONG

    def test_profit_checked_before_shipping(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, profit=Decimal("10"), shipping_days=30))
        assert result.reason == DecisionReason.PROFIT_BELOW_MIN

    @pytest.mark.parametrize("mode", list(AutoFulfillmentMode))
    @pytest.mark.parametrize("is_active", [True, False])
    @pytest.mark.parametrize("is_dry_run", [True, False])
    def test_guardrails_win_over_any_mode(self, base_input, mode, is_active, is_dry_run):
        """어떤 모드/플래그 조합에서도 가드레일 위반은 SKIP"""
        data = replace(base_input, mode=mode, is_active=is_active, is_dry_run=is_dry_run)

        assert classify_fulfillment_decision(replace(data, profit=Decimal("0"))).decision == Decision.SKIP
        assert classify_fulfillment_decision(replace(data, shipping_days=99)).decision == Decision.SKIP

    def test_low_profit_with_points_excluded(self):
        """판매가 5000, 매입가 4200, 국내 배송비 500 포함 → 수익 300, 최소 1000 미달"""
        profit = calculate_profit(5000, 4200, 0, 500, include_loyalty=False, include_domestic_shipping=True)
        assert profit.expected_profit == Decimal("300")

        result = classify_fulfillment_decision(
            DecisionInput(
                is_active=True,
                is_dry_run=False,
                mode=AutoFulfillmentMode.AUTO_STRICT,
                min_profit=Decimal("1000"),
                max_shipping_days=7,
                review_band_percent=None,
                profit=profit.expected_profit,
                shipping_days=2,
            )
        )
        assert result.decision == Decision.SKIP
        assert result.reason == DecisionReason.PROFIT_BELOW_MIN


class TestModes:

    def test_inactive_shop_goes_to_review(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, is_active=False))
        assert result.decision == Decision.MANUAL_REVIEW
        assert result.reason == DecisionReason.INACTIVE_SHOP

    def test_manual_only(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, mode=AutoFulfillmentMode.MANUAL_ONLY))
        assert result.decision == Decision.MANUAL_REVIEW
        assert result.reason == DecisionReason.MANUAL_MODE

    def test_dry_run(self, base_input):
        result = classify_fulfillment_decision(replace(base_input, is_dry_run=True))
        assert result.decision == Decision.DRY_RUN
        assert result.reason == DecisionReason.DRY_RUN_ONLY

    def test_auto_fulfill_has_no_reason(self, base_input):
        result = classify_fulfillment_decision(base_input)
        assert result.decision == Decision.AUTO_FULFILL
        assert result.reason is None


class TestReviewBand:

    @pytest.fixture
    def band_input(self, base_input):
        return replace(
            base_input,
            mode=AutoFulfillmentMode.AUTO_WITH_REVIEW_BAND,
            review_band_percent=Decimal("20"),
        )

    def test_marginal_profit_in_band(self, band_input):
        # (1100 - 1000) / 1000 = 10% <= 20%
        result = classify_fulfillment_decision(replace(band_input, profit=Decimal("1100")))
        assert result.decision == Decision.MANUAL_REVIEW
        assert result.reason == DecisionReason.REVIEW_BAND

    def test_band_upper_edge_inclusive(self, band_input):
        result = classify_fulfillment_decision(replace(band_input, profit=Decimal("1200")))
        assert result.reason == DecisionReason.REVIEW_BAND

    def test_above_band_auto_fulfills(self, band_input):
        result = classify_fulfillment_decision(replace(band_input, profit=Decimal("1201")))
        assert result.decision == Decision.AUTO_FULFILL

    def test_above_band_dry_run(self, band_input):
        result = classify_fulfillment_decision(replace(band_input, profit=Decimal("5000"), is_dry_run=True))
        assert result.decision == Decision.DRY_RUN

    def test_band_ignored_without_percent(self, band_input):
        result = classify_fulfillment_decision(replace(band_input, review_band_percent=None, profit=Decimal("1100")))
        assert result.decision == Decision.AUTO_FULFILL

    def test_band_ignored_when_min_profit_zero(self, band_input):
        result = classify_fulfillment_decision(replace(band_input, min_profit=Decimal("0"), profit=Decimal("1")))
        assert result.decision == Decision.AUTO_FULFILL

    def test_band_not_applied_in_strict_mode(self, band_input):
        result = classify_fulfillment_decision(
            replace(band_input, mode=AutoFulfillmentMode.AUTO_STRICT, profit=Decimal("1100"))
        )
        assert result.decision == Decision.AUTO_FULFILL

    def test_ten_percent_band_with_double_min_profit(self, band_input):
        # (2000 - 1000) / 1000 = 100% 이므로 밴드 밖
        result = classify_fulfillment_decision(
            replace(band_input, review_band_percent=Decimal("10"), profit=Decimal("2000"))
        )
        assert result.decision == Decision.AUTO_FULFILL
