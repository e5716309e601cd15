"""
주문 처리 파이프라인 테스트

브라우저 대신 FakeAutomation(conftest)을 사용하고, DB는 메모리 SQLite를 사용합니다.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from dropship_worker.models import (
    AmazonOrder,
    AmazonOrderStatus,
    AutoFulfillmentMode,
    ErrorItem,
    OrderStatusHistory,
    ProcessingMode,
    ProcessingStatus,
    ProductMapping,
    ShopeeOrder,
    ShopeeStatus,
)
from dropship_worker.services import job_queue as jobs
from dropship_worker.services.browser.amazon_automation import AutomationError, AutomationErrorCode, CheckoutResult
from dropship_worker.services.job_queue import JobQueue
from dropship_worker.services.order_pipeline import OrderPipeline
from dropship_worker.worker import Worker


@pytest.fixture
def queue(session_factory):
    return JobQueue(session_factory, attempts=3, backoff_seconds=0)


@pytest.fixture
def pipeline(session_factory, queue, fake_automation, aes_key):
    return OrderPipeline(session_factory, queue, fake_automation, aes_key=aes_key, shipping_label="Tokyo Hub")


@pytest.fixture
def ready(fake_automation, scrape_result):
    """구매 가능한 조회 결과 + 성공하는 체크아웃"""
    fake_automation.scrape_result = scrape_result()
    fake_automation.purchase_result = CheckoutResult(
        amazon_order_id="503-1234567-7654321", final_price=Decimal("11980"), currency="JPY"
    )
    return fake_automation


def reload(session, model, id_):
    session.expire_all()
    return session.get(model, id_)


def errors_for(session, order):
    return session.execute(select(ErrorItem).where(ErrorItem.shopee_order_id == order.id)).scalars().all()


def history_for(session, order):
    return {
        h.to_status
        for h in session.execute(
            select(OrderStatusHistory).where(OrderStatusHistory.shopee_order_id == order.id)
        ).scalars()
    }


def target_order(session, order):
    return session.execute(select(AmazonOrder).where(AmazonOrder.shopee_order_id == order.id)).scalars().first()


class TestAutoFulfill:

    async def test_successful_purchase(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(str(order.id))

        assert outcome["status"] == "FULFILLED"
        assert outcome["decision"] == "AUTO_FULFILL"

        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.processing_status == ProcessingStatus.FULFILLED
        assert saved.processing_mode == ProcessingMode.AUTO
        assert saved.expected_profit == Decimal("3000")
        assert saved.expected_profit_currency == "JPY"
        assert saved.shipping_days == 7  # 배송 예정일이 없으면 최대 허용 일수로 간주
        assert saved.used_include_points is False

        placed = target_order(test_session, order)
        assert placed.status == AmazonOrderStatus.PLACED
        assert placed.amazon_order_id == "503-1234567-7654321"
        assert placed.purchase_price == Decimal("11980")
        assert placed.placed_at is not None

        assert ready.purchases == [
            ("https://www.amazon.co.jp/dp/B000TEST01", "Tokyo Hub", "buyer@example.com", "amazon-password")
        ]
        assert {"PROCESSING", "FULFILLED"} <= history_for(test_session, order)
        # 조회 컨텍스트는 정확히 한 번 닫힘
        assert [s.close_calls for s in ready.sessions] == [1]

    async def test_shop_address_label_overrides_default(self, pipeline, ready, make_shop, make_order):
        shop = make_shop(default_shipping_address_label="Osaka Depot")
        order = make_order(shop)

        await pipeline.process_order(order.id)

        assert ready.purchases[0][1] == "Osaka Depot"

    async def test_missing_final_price_falls_back_to_base_profit(self, pipeline, ready, make_shop, make_order, test_session):
        ready.purchase_result = CheckoutResult(amazon_order_id="503-1234567-7654321")
        shop = make_shop()
        order = make_order(shop)

        await pipeline.process_order(order.id)

        assert target_order(test_session, order).purchase_price == Decimal("3000")

    async def test_already_fulfilled_is_not_purchased_again(self, pipeline, ready, make_shop, make_order):
        shop = make_shop()
        order = make_order(shop, processing_status=ProcessingStatus.FULFILLED)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "FULFILLED"
        assert ready.purchases == []
        assert ready.sessions == []


class TestCheckoutFailures:

    async def test_missing_confirmation_marker(self, pipeline, ready, make_shop, make_order, test_session):
        """확인 화면 마커가 없으면 수동 검토로 보내고 Target Order는 만들지 않음"""
        ready.purchase_error = AutomationError(
            AutomationErrorCode.ORDER_CONFIRMATION_FAILED,
            "Order confirmation marker not found after placing order",
            "tmp/order-confirmation-failed-1.png",
        )
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.processing_status == ProcessingStatus.MANUAL_REVIEW
        assert saved.last_processing_error_code == "ORDER_CONFIRMATION_FAILED"

        [error] = errors_for(test_session, order)
        assert error.error_code == "ORDER_CONFIRMATION_FAILED"
        assert error.meta == {"screenshotPath": "tmp/order-confirmation-failed-1.png"}
        assert error.profit_value == Decimal("3000")
        assert target_order(test_session, order) is None
        assert [s.close_calls for s in ready.sessions] == [1]

    async def test_unexpected_checkout_exception(self, pipeline, ready, make_shop, make_order, test_session):
        ready.purchase_error = RuntimeError("browser crashed")
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        [error] = errors_for(test_session, order)
        assert error.error_code == "AMAZON_PURCHASE_FAILED"
        assert error.reason == "browser crashed"
        assert error.profit_value == Decimal("3000")
        assert error.shipping_days == 7
        assert target_order(test_session, order) is None

    async def test_scrape_closed_once_when_pipeline_raises(self, pipeline, ready, make_shop, make_order, monkeypatch):
        shop = make_shop()
        order = make_order(shop)

        def explode(*args, **kwargs):
            raise RuntimeError("db went away")

        monkeypatch.setattr(pipeline, "evaluate", explode)

        with pytest.raises(RuntimeError):
            await pipeline.process_order(order.id)

        assert [s.close_calls for s in ready.sessions] == [1]
        assert ready.purchases == []


class TestDuplicatePurchaseGuard:
    """체크아웃이 시작된 주문은 어떤 경로로도 다시 구매하지 않음"""

    async def test_interrupted_checkout_goes_to_review(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop()
        order = make_order(
            shop,
            processing_status=ProcessingStatus.PROCESSING,
            expected_profit=Decimal("3000"),
            shipping_days=3,
        )

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        assert ready.purchases == []
        assert ready.sessions == []

        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.processing_status == ProcessingStatus.MANUAL_REVIEW
        assert saved.last_processing_error_code == "ORDER_OUTCOME_UNKNOWN"
        [error] = errors_for(test_session, order)
        assert error.error_code == "ORDER_OUTCOME_UNKNOWN"
        assert error.profit_value == Decimal("3000")
        assert error.shipping_days == 3

    async def test_save_failure_after_checkout_is_not_retried(
        self, pipeline, ready, queue, make_shop, make_order, monkeypatch, test_session
    ):
        shop = make_shop()
        order = make_order(shop)
        real_upsert = pipeline._upsert_target_order
        calls = {"placed": 0}

        def flaky_upsert(session, target_for, **fields):
            if fields.get("status") == AmazonOrderStatus.PLACED:
                calls["placed"] += 1
                if calls["placed"] == 1:
                    raise RuntimeError("connection reset")
            return real_upsert(session, target_for, **fields)

        monkeypatch.setattr(pipeline, "_upsert_target_order", flaky_upsert)

        async def handle(data):
            return await pipeline.process_order(data["shopeeOrderId"])

        worker = Worker(queue, {jobs.PROCESS_ORDER: handle}, concurrency=1, idle_sleep=0)
        queue.add(jobs.PROCESS_ORDER, {"shopeeOrderId": str(order.id), "shopId": str(shop.id)})
        while await worker.run_once():
            pass

        assert len(ready.purchases) == 1
        assert queue.counts() == {}

        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.processing_status == ProcessingStatus.MANUAL_REVIEW
        assert saved.last_processing_error_code == "ORDER_OUTCOME_UNKNOWN"
        [error] = errors_for(test_session, order)
        assert error.meta["amazonOrderId"] == "503-1234567-7654321"
        assert error.meta["finalPrice"] == "11980"
        assert error.profit_value == Decimal("3000")
        assert target_order(test_session, order) is None


class TestDecisions:

    async def test_profit_below_min_is_skipped(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop()
        order = make_order(shop, order_total=Decimal("12500"))

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "SKIPPED"
        assert outcome["reason"] == "PROFIT_BELOW_MIN"
        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.expected_profit == Decimal("500")

        [error] = errors_for(test_session, order)
        assert error.error_code == "FILTER_FAILED"
        assert error.filter_failure_type == "PROFIT_BELOW_MIN"
        assert error.profit_value == Decimal("500")
        assert ready.purchases == []

    async def test_long_delivery_is_skipped(self, pipeline, ready, make_shop, make_order, scrape_result, test_session):
        ready.scrape_result = scrape_result(estimated_delivery=datetime.now(timezone.utc) + timedelta(days=10))
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "SKIPPED"
        assert outcome["reason"] == "SHIPPING_DAYS_TOO_LONG"
        [error] = errors_for(test_session, order)
        assert error.shipping_days == 10

    async def test_points_counted_when_enabled(self, pipeline, ready, make_shop, make_order, scrape_result, test_session):
        ready.scrape_result = scrape_result(points_earned=1200)
        shop = make_shop(include_points=True, include_domestic_shipping=True, domestic_shipping_cost=Decimal("800"))
        order = make_order(shop)

        await pipeline.process_order(order.id)

        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.expected_profit == Decimal("3400")
        assert saved.used_include_points is True
        assert saved.used_include_domestic_shipping is True

    async def test_dry_run_creates_unplaced_target_order(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop(is_dry_run=True)
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["decision"] == "DRY_RUN"
        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.processing_status == ProcessingStatus.MANUAL_REVIEW
        assert saved.processing_mode == ProcessingMode.AUTO_DRY_RUN

        created = target_order(test_session, order)
        assert created.status == AmazonOrderStatus.CREATED
        assert created.amazon_order_id is None
        assert created.purchase_price == Decimal("12000")
        assert created.raw_payload["dryRun"] is True
        assert ready.purchases == []

    async def test_manual_only_goes_to_review(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop(auto_fulfillment_mode=AutoFulfillmentMode.MANUAL_ONLY)
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        assert outcome["reason"] == "MANUAL_MODE"
        assert errors_for(test_session, order) == []
        assert ready.purchases == []

    async def test_review_band(self, pipeline, ready, make_shop, make_order):
        shop = make_shop(
            auto_fulfillment_mode=AutoFulfillmentMode.AUTO_WITH_REVIEW_BAND,
            review_band_percent=Decimal("10"),
        )
        # 수익 1050 (최소 1000 대비 5%)
        order = make_order(shop, order_total=Decimal("13050"))

        outcome = await pipeline.process_order(order.id)

        assert outcome["reason"] == "REVIEW_BAND"
        assert ready.purchases == []


class TestPreconditions:

    async def test_inactive_shop(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop(is_active=False)
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        assert outcome["mode"] == "MANUAL"
        assert ready.sessions == []

    async def test_unpaid_order_stays_unprocessed(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop()
        order = make_order(shop, shopee_status=ShopeeStatus.UNPAID, processing_status=ProcessingStatus.QUEUED)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "UNPROCESSED"
        assert ready.sessions == []

    async def test_missing_mapping(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop()
        order = make_order(shop, amazon_product_url=None)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        assert outcome["mode"] == "MANUAL"
        [error] = errors_for(test_session, order)
        assert error.error_code == "MISSING_MAPPING"
        assert ready.sessions == []

    async def test_mapping_resolved_from_first_item(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop(mappings={"111": "https://www.amazon.co.jp/dp/B000MAPPED"})
        order = make_order(shop, amazon_product_url=None)

        await pipeline.process_order(order.id)

        assert reload(test_session, ShopeeOrder, order.id).amazon_product_url == "https://www.amazon.co.jp/dp/B000MAPPED"
        assert ready.purchases[0][0] == "https://www.amazon.co.jp/dp/B000MAPPED"

    async def test_inactive_mapping_ignored(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop(mappings={"111": "https://www.amazon.co.jp/dp/B000MAPPED"})
        mapping = test_session.execute(select(ProductMapping)).scalars().one()
        mapping.is_active = False
        test_session.commit()
        order = make_order(shop, amazon_product_url=None)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        assert [e.error_code for e in errors_for(test_session, order)] == ["MISSING_MAPPING"]

    async def test_missing_amazon_credentials(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop(amazon_credential=False)
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        [error] = errors_for(test_session, order)
        assert error.error_code == "MISSING_AMAZON_CREDENTIALS"
        assert error.profit_value == Decimal("3000")
        assert error.shipping_days == 7
        assert ready.purchases == []

    async def test_undecryptable_credentials_never_reach_processing(
        self, session_factory, queue, ready, make_shop, make_order, test_session
    ):
        pipeline = OrderPipeline(session_factory, queue, ready, aes_key="ff" * 32)
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        assert "PROCESSING" not in history_for(test_session, order)
        assert [e.error_code for e in errors_for(test_session, order)] == ["MISSING_AMAZON_CREDENTIALS"]
        assert ready.purchases == []


class TestScrapeRejections:

    @pytest.mark.parametrize(
        "overrides, code, reason",
        [
            ({"is_available": False}, "AMAZON_OUT_OF_STOCK", "Out of stock"),
            ({"price": None}, "AMAZON_OUT_OF_STOCK", "Price unavailable"),
            ({"is_new": False}, "AMAZON_USED_ONLY", "Only used condition"),
        ],
    )
    async def test_rejected_listing(
        self, pipeline, ready, make_shop, make_order, scrape_result, test_session, overrides, code, reason
    ):
        ready.scrape_result = scrape_result(**overrides)
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        [error] = errors_for(test_session, order)
        assert error.error_code == code
        assert error.reason == reason
        assert error.meta == {"amazonCurrency": "JPY"}
        assert [s.close_calls for s in ready.sessions] == [1]
        assert ready.purchases == []

    async def test_scrape_failure(self, pipeline, ready, make_shop, make_order, test_session):
        ready.scrape_error = AutomationError(
            AutomationErrorCode.AMAZON_SCRAPE_FAILED, "Navigation failed: timeout", "tmp/scrape-failed-1.png"
        )
        shop = make_shop()
        order = make_order(shop)

        outcome = await pipeline.process_order(order.id)

        assert outcome["status"] == "MANUAL_REVIEW"
        [error] = errors_for(test_session, order)
        assert error.error_code == "AMAZON_SCRAPE_FAILED"
        assert error.meta == {"screenshotPath": "tmp/scrape-failed-1.png"}
        assert reload(test_session, ShopeeOrder, order.id).last_processing_error_code == "AMAZON_SCRAPE_FAILED"


class TestClassification:

    async def test_auto_fulfillable_orders_are_queued(self, pipeline, ready, make_shop, make_order, queue, test_session):
        shop = make_shop()
        good = make_order(shop, "ORDER-GOOD")
        unmapped = make_order(shop, "ORDER-UNMAPPED", amazon_product_url=None)

        stats = await pipeline.classify_shop_orders(shop.id)

        assert stats == {"evaluated": 2, "queued": 1, "failed": 0}
        assert reload(test_session, ShopeeOrder, good.id).processing_status == ProcessingStatus.QUEUED
        assert reload(test_session, ShopeeOrder, unmapped.id).processing_status == ProcessingStatus.MANUAL_REVIEW

        job = queue.claim()
        assert job.name == jobs.PROCESS_ORDER
        assert job.data == {"shopeeOrderId": str(good.id), "shopId": str(shop.id)}
        assert [s.close_calls for s in ready.sessions] == [1]
        # 분류 단계에서는 구매하지 않음
        assert ready.purchases == []

    async def test_one_failure_does_not_stop_others(self, pipeline, ready, make_shop, make_order, queue):
        shop = make_shop()
        make_order(shop, "ORDER-BROKEN", amazon_product_url="https://www.amazon.co.jp/dp/B000BROKEN")
        make_order(shop, "ORDER-OK")

        original = ready.scrape_product

        async def flaky(url):
            if url.endswith("B000BROKEN"):
                raise RuntimeError("context crashed")
            return await original(url)

        ready.scrape_product = flaky

        stats = await pipeline.classify_shop_orders(shop.id)

        assert stats == {"evaluated": 1, "queued": 1, "failed": 1}
        assert queue.counts() == {jobs.WAITING: 1}

    async def test_inactive_shop_is_not_classified(self, pipeline, ready, make_shop, make_order):
        shop = make_shop(is_active=False)
        make_order(shop)

        assert await pipeline.classify_shop_orders(shop.id) == {"evaluated": 0, "queued": 0, "failed": 0}
        assert ready.sessions == []


class TestRetry:

    def test_retry_requeues_order(self, pipeline, make_shop, make_order, queue, test_session):
        shop = make_shop()
        order = make_order(shop, processing_status=ProcessingStatus.MANUAL_REVIEW)

        result = pipeline.retry_order(order.id, source="UI")

        assert result["retrySource"] == "UI"
        saved = reload(test_session, ShopeeOrder, order.id)
        assert saved.processing_status == ProcessingStatus.QUEUED
        assert saved.processing_mode == ProcessingMode.MANUAL

        job = queue.claim()
        assert str(job.id) == result["jobId"]
        assert job.data["retrySource"] == "UI"

    def test_retry_fulfilled_order_rejected(self, pipeline, make_shop, make_order):
        shop = make_shop()
        order = make_order(shop, processing_status=ProcessingStatus.FULFILLED)

        with pytest.raises(ValueError):
            pipeline.retry_order(order.id)

    def test_retry_unknown_order(self, pipeline):
        with pytest.raises(LookupError):
            pipeline.retry_order("00000000-0000-0000-0000-000000000000")

    async def test_retry_source_recorded_in_history(self, pipeline, ready, make_shop, make_order, test_session):
        shop = make_shop()
        order = make_order(shop, processing_status=ProcessingStatus.MANUAL_REVIEW)

        await pipeline.process_order(order.id, retry_source="UI")

        sources = {
            h.source
            for h in test_session.execute(
                select(OrderStatusHistory).where(OrderStatusHistory.shopee_order_id == order.id)
            ).scalars()
        }
        assert sources == {"retry:UI"}
