from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from dropship_worker.models import (
    ACTIONABLE_SHOPEE_STATUSES,
    AmazonOrder,
    AmazonOrderStatus,
    AutoShippingSetting,
    ErrorItem,
    OrderStatusHistory,
    ProcessingMode,
    ProcessingStatus,
    ProductMapping,
    Shop,
    ShopeeOrder,
)
from dropship_worker.services.browser.amazon_automation import (
    AmazonAutomation,
    AutomationError,
    AutomationErrorCode,
    CheckoutResult,
    ScrapeResult,
    ScrapeSession,
)
from dropship_worker.services.fulfillment_decision import (
    Decision,
    DecisionInput,
    DecisionResult,
    classify_fulfillment_decision,
)
from dropship_worker.services.job_queue import PROCESS_ORDER, JobQueue
from dropship_worker.services.profit import ProfitResult, calculate_profit, calculate_shipping_days
from dropship_worker.services.secret_box import SecretBoxError, decrypt_secret
from dropship_worker.settings import settings

logger = logging.getLogger(__name__)

# 오류 코드 (AutomationErrorCode 외)
MISSING_MAPPING = "MISSING_MAPPING"
AMAZON_OUT_OF_STOCK = "AMAZON_OUT_OF_STOCK"
AMAZON_USED_ONLY = "AMAZON_USED_ONLY"
FILTER_FAILED = "FILTER_FAILED"
MISSING_AMAZON_CREDENTIALS = "MISSING_AMAZON_CREDENTIALS"
# 구매가 실제로 됐는지 알 수 없음 (운영자가 Amazon 주문 내역과 대조해야 함)
ORDER_OUTCOME_UNKNOWN = "ORDER_OUTCOME_UNKNOWN"


@dataclass
class Evaluation:
    profit: ProfitResult
    shipping_days: int
    decision: DecisionResult
    currency: str


class OrderPipeline:
    """
    주문 1건 처리 상태 머신.

    UNPROCESSED → QUEUED → PROCESSING → FULFILLED | SKIPPED | MANUAL_REVIEW
    알려진 실패는 모두 ErrorItem + 상태 전이로 기록하고, 그 외 예외만 큐 재시도로 올립니다.
    체크아웃이 시작된 뒤의 예외는 큐로 올리지 않습니다.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: JobQueue,
        automation: AmazonAutomation,
        aes_key: str | None = None,
        shipping_label: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.automation = automation
        self.aes_key = settings.aes_secret_key if aes_key is None else aes_key
        self.shipping_label = shipping_label or settings.amazon_shipping_label

    # ------------------------------------------------------------------
    # 공통 헬퍼
    # ------------------------------------------------------------------

    def _transition(
        self,
        session: Session,
        order: ShopeeOrder,
        status: ProcessingStatus,
        mode: ProcessingMode | None,
        source: str,
        note: str | None = None,
    ) -> None:
        previous = order.processing_status
        order.processing_status = status
        if mode is not None:
            order.processing_mode = mode
        if previous != status:
            session.add(
                OrderStatusHistory(
                    shopee_order_id=order.id,
                    from_status=previous.value if previous else None,
                    to_status=status.value,
                    source=source,
                    note=note,
                )
            )
        logger.info(
            f"[PIPELINE] Order {order.shopee_order_sn}: {previous.value if previous else None} -> {status.value} "
            f"({note or source})"
        )

    def _record_error(
        self,
        session: Session,
        order: ShopeeOrder,
        code: str,
        reason: str,
        url: str | None = None,
        filter_failure_type: str | None = None,
        profit: Decimal | None = None,
        shipping_days: int | None = None,
        metadata: dict[str, Any] | None = None,
        stamp: bool = False,
    ) -> ErrorItem:
        item = ErrorItem(
            shopee_order_id=order.id,
            shop_id=order.shop_id,
            amazon_product_url=url,
            error_code=code,
            reason=reason,
            filter_failure_type=filter_failure_type,
            profit_value=profit,
            shipping_days=shipping_days,
            meta=metadata or {},
        )
        session.add(item)
        if stamp:
            order.last_processing_error_code = code
            order.last_processing_error_message = reason
        logger.warning(f"[PIPELINE] Order {order.shopee_order_sn} error {code}: {reason}")
        return item

    def resolve_product_url(self, session: Session, order: ShopeeOrder) -> str | None:
        """주문에 해석된 URL이 있으면 그대로, 없으면 첫 상품의 활성 매핑을 찾습니다."""
        if order.amazon_product_url:
            return order.amazon_product_url

        items = (order.raw_payload or {}).get("item_list") or []
        if not items:
            return None
        item_id = items[0].get("item_id")
        if item_id is None:
            return None

        mapping = session.execute(
            select(ProductMapping)
            .where(ProductMapping.shop_id == order.shop_id)
            .where(ProductMapping.shopee_item_id == str(item_id))
            .where(ProductMapping.is_active.is_(True))
        ).scalars().first()
        return mapping.amazon_product_url if mapping else None

    @staticmethod
    def scrape_rejection(result: ScrapeResult) -> tuple[str, str] | None:
        # 가격이 없는 페이지는 구매 불가로 보고 품절 계열로 분류
        if not result.is_available:
            return AMAZON_OUT_OF_STOCK, "Out of stock"
        if result.price is None:
            return AMAZON_OUT_OF_STOCK, "Price unavailable"
        if not result.is_new:
            return AMAZON_USED_ONLY, "Only used condition"
        return None

    def evaluate(self, order: ShopeeOrder, setting: AutoShippingSetting, result: ScrapeResult) -> Evaluation:
        profit = calculate_profit(
            sale_price=order.order_total,
            replacement_cost=result.price,
            loyalty_credit=result.points_earned or 0,
            domestic_shipping_cost=setting.domestic_shipping_cost or 0,
            include_loyalty=bool(setting.include_points),
            include_domestic_shipping=bool(setting.include_domestic_shipping),
        )
        if result.estimated_delivery is not None:
            shipping_days = calculate_shipping_days(result.estimated_delivery)
        else:
            shipping_days = setting.max_shipping_days

        decision = classify_fulfillment_decision(
            DecisionInput(
                is_active=bool(setting.is_active),
                is_dry_run=bool(setting.is_dry_run),
                mode=setting.auto_fulfillment_mode,
                min_profit=setting.min_expected_profit or Decimal("0"),
                max_shipping_days=setting.max_shipping_days,
                review_band_percent=setting.review_band_percent,
                profit=profit.expected_profit,
                shipping_days=shipping_days,
            )
        )
        currency = order.currency or result.currency or settings.default_currency
        return Evaluation(profit=profit, shipping_days=shipping_days, decision=decision, currency=currency)

    @staticmethod
    def _apply_snapshot(order: ShopeeOrder, setting: AutoShippingSetting, evaluation: Evaluation) -> None:
        order.expected_profit = evaluation.profit.expected_profit
        order.expected_profit_currency = evaluation.currency
        order.shipping_days = evaluation.shipping_days
        order.used_include_points = bool(setting.include_points)
        order.used_include_domestic_shipping = bool(setting.include_domestic_shipping)

    def _upsert_target_order(
        self,
        session: Session,
        order: ShopeeOrder,
        **fields: Any,
    ) -> AmazonOrder:
        # 주문당 Target Order는 최대 1건 (재시도 시 기존 행 갱신)
        target = session.execute(
            select(AmazonOrder).where(AmazonOrder.shopee_order_id == order.id)
        ).scalars().first()
        if target is None:
            target = AmazonOrder(shopee_order_id=order.id, **fields)
            session.add(target)
        else:
            for key, value in fields.items():
                setattr(target, key, value)
        return target

    def _mode_for(self, setting: AutoShippingSetting) -> ProcessingMode:
        return ProcessingMode.AUTO_DRY_RUN if setting.is_dry_run else ProcessingMode.AUTO

    async def _scrape(
        self, session: Session, order: ShopeeOrder, url: str, source: str
    ) -> tuple[ScrapeSession | None, bool]:
        """
        상품 조회 + 구매 가능 여부 판정.
        (세션, 통과 여부)를 반환합니다. 조회 자체가 실패하면 세션은 None.
        """
        try:
            scrape = await self.automation.scrape_product(url)
        except AutomationError as e:
            self._record_error(
                session, order, e.code.value, e.message, url=url,
                metadata={"screenshotPath": e.screenshot_path} if e.screenshot_path else None,
                stamp=True,
            )
            self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, e.code.value)
            return None, False

        rejection = self.scrape_rejection(scrape.result)
        if rejection:
            code, reason = rejection
            self._record_error(
                session, order, code, reason, url=url,
                metadata={"amazonCurrency": scrape.result.currency},
            )
            self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, code)
            return scrape, False
        return scrape, True

    def _route_decision(
        self,
        session: Session,
        order: ShopeeOrder,
        setting: AutoShippingSetting,
        url: str,
        result: ScrapeResult,
        evaluation: Evaluation,
        source: str,
    ) -> bool:
        """
        AUTO_FULFILL 이외의 결정을 처리합니다.
        True면 호출자가 자동 구매로 진행해야 합니다.
        """
        decision = evaluation.decision
        mode = self._mode_for(setting)
        reason = decision.reason.value if decision.reason else None

        if decision.decision == Decision.SKIP:
            self._record_error(
                session, order, FILTER_FAILED, reason or FILTER_FAILED, url=url,
                filter_failure_type=reason,
                profit=evaluation.profit.expected_profit,
                shipping_days=evaluation.shipping_days,
            )
            self._transition(session, order, ProcessingStatus.SKIPPED, mode, source, reason)
            return False

        if decision.decision == Decision.MANUAL_REVIEW:
            self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, mode, source, reason)
            return False

        if decision.decision == Decision.DRY_RUN:
            self._upsert_target_order(
                session,
                order,
                amazon_order_id=None,
                status=AmazonOrderStatus.CREATED,
                product_url=url,
                purchase_price=result.price,
                currency=result.currency or evaluation.currency,
                points_used=None,
                placed_at=None,
                raw_payload={"dryRun": True, "scrape": result.to_dict()},
            )
            self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO_DRY_RUN, source, reason)
            return False

        return True

    # ------------------------------------------------------------------
    # 주문 처리 (process-order)
    # ------------------------------------------------------------------

    async def process_order(self, order_id: str | uuid.UUID, retry_source: str | None = None) -> dict[str, Any]:
        source = f"retry:{retry_source}" if retry_source else PROCESS_ORDER
        scrape: ScrapeSession | None = None

        with self.session_factory() as session:
            order = session.get(ShopeeOrder, _as_uuid(order_id))
            if order is None:
                logger.warning(f"[PIPELINE] Order {order_id} not found")
                return {"status": "missing"}

            try:
                # 이미 구매가 끝난 주문은 다시 구매하지 않음 (재전달/재시도 대비)
                if order.processing_status == ProcessingStatus.FULFILLED:
                    logger.info(f"[PIPELINE] Order {order.shopee_order_sn} already fulfilled, skipping")
                    return {"status": ProcessingStatus.FULFILLED.value}

                # 이전 실행이 체크아웃 도중 중단됨. 주문이 들어갔을 수 있으므로 다시 구매하지 않음
                if order.processing_status == ProcessingStatus.PROCESSING:
                    self._record_error(
                        session, order, ORDER_OUTCOME_UNKNOWN,
                        "Previous checkout did not finish; check Amazon order history before retrying.",
                        url=order.amazon_product_url,
                        profit=order.expected_profit,
                        shipping_days=order.shipping_days,
                        stamp=True,
                    )
                    self._transition(
                        session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, ORDER_OUTCOME_UNKNOWN
                    )
                    session.commit()
                    return _outcome(order)

                shop = session.get(Shop, order.shop_id)
                setting = shop.setting if shop else None

                # 1. 자동화 비활성
                if setting is None or not setting.is_active:
                    self._transition(
                        session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.MANUAL, source, "automation inactive"
                    )
                    session.commit()
                    return _outcome(order)

                # 2. 아직 처리할 수 없는 마켓 상태
                if order.shopee_status not in ACTIONABLE_SHOPEE_STATUSES:
                    self._transition(
                        session, order, ProcessingStatus.UNPROCESSED, None, source, f"status {order.shopee_status.value}"
                    )
                    session.commit()
                    return _outcome(order)

                # 3. 구매 대상 URL
                url = self.resolve_product_url(session, order)
                if not url:
                    self._record_error(session, order, MISSING_MAPPING, "No Amazon product mapping found for this Shopee item.")
                    self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.MANUAL, source, MISSING_MAPPING)
                    session.commit()
                    return _outcome(order)
                order.amazon_product_url = url

                # 4. 상품 조회
                scrape, ok = await self._scrape(session, order, url, source)
                if not ok:
                    session.commit()
                    return _outcome(order)
                result = scrape.result

                # 5. 수익/배송일 스냅샷 (이후 단계가 실패해도 남도록 먼저 커밋)
                evaluation = self.evaluate(order, setting, result)
                self._apply_snapshot(order, setting, evaluation)
                session.commit()

                # 6. 결정
                if not self._route_decision(session, order, setting, url, result, evaluation, source):
                    session.commit()
                    return _outcome(order, evaluation)

                # 7. 구매 계정
                credential = shop.amazon_credential
                if credential is None or not self.aes_key:
                    self._fail_credentials(session, order, url, source, evaluation, "Amazon credentials missing")
                    session.commit()
                    return _outcome(order, evaluation)
                try:
                    password = decrypt_secret(credential.password_encrypted, credential.encryption_iv, self.aes_key)
                except SecretBoxError as e:
                    self._fail_credentials(
                        session, order, url, source, evaluation, f"Amazon credentials could not be decrypted: {e}"
                    )
                    session.commit()
                    return _outcome(order, evaluation)

                # 8. 구매
                self._transition(session, order, ProcessingStatus.PROCESSING, ProcessingMode.AUTO, source)
                session.commit()
                # 구매 컨텍스트를 열기 전에 조회용 컨텍스트를 먼저 반납
                await scrape.close()

                label = setting.default_shipping_address_label or self.shipping_label
                try:
                    checkout = await self.automation.purchase(url, label, credential.username, password)
                except AutomationError as e:
                    self._record_error(
                        session, order, e.code.value, e.message, url=url,
                        profit=evaluation.profit.expected_profit,
                        shipping_days=evaluation.shipping_days,
                        metadata={"screenshotPath": e.screenshot_path} if e.screenshot_path else None,
                        stamp=True,
                    )
                    self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, e.code.value)
                    session.commit()
                    return _outcome(order, evaluation)
                except Exception as e:
                    logger.exception(f"[PIPELINE] Unexpected checkout failure for {order.shopee_order_sn}")
                    code = AutomationErrorCode.AMAZON_PURCHASE_FAILED.value
                    self._record_error(
                        session, order, code, str(e) or type(e).__name__, url=url,
                        profit=evaluation.profit.expected_profit,
                        shipping_days=evaluation.shipping_days,
                        stamp=True,
                    )
                    self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, code)
                    session.commit()
                    return _outcome(order, evaluation)

                # 구매가 끝난 뒤에는 어떤 예외도 큐로 올리지 않음 (큐 재시도 = 중복 구매)
                try:
                    self._record_purchase(session, order, url, result, evaluation, checkout, source)
                    session.commit()
                except Exception as e:
                    session.rollback()
                    logger.exception(
                        f"[PIPELINE] Order {order.shopee_order_sn} purchased as {checkout.amazon_order_id} "
                        f"but the result could not be saved"
                    )
                    self._record_error(
                        session, order, ORDER_OUTCOME_UNKNOWN,
                        f"Amazon order placed but not recorded: {e}",
                        url=url,
                        profit=evaluation.profit.expected_profit,
                        shipping_days=evaluation.shipping_days,
                        metadata={
                            "amazonOrderId": checkout.amazon_order_id,
                            "finalPrice": str(checkout.final_price) if checkout.final_price is not None else None,
                        },
                        stamp=True,
                    )
                    self._transition(
                        session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, ORDER_OUTCOME_UNKNOWN
                    )
                    session.commit()
                return _outcome(order, evaluation)
            finally:
                if scrape is not None:
                    await scrape.close()

    def _record_purchase(
        self,
        session: Session,
        order: ShopeeOrder,
        url: str,
        result: ScrapeResult,
        evaluation: Evaluation,
        checkout: CheckoutResult,
        source: str,
    ) -> None:
        # 확인 화면에 가격이 없으면 계산된 기본 수익 항목으로 기록 (관리 화면과 같은 규칙)
        price = checkout.final_price if checkout.final_price is not None else evaluation.profit.breakdown.base
        self._upsert_target_order(
            session,
            order,
            amazon_order_id=checkout.amazon_order_id,
            status=AmazonOrderStatus.PLACED,
            product_url=url,
            purchase_price=price,
            currency=checkout.currency or result.currency or evaluation.currency,
            shipping_cost=checkout.shipping_cost,
            points_used=checkout.points_used,
            placed_at=datetime.now(timezone.utc),
            raw_payload={"scrape": result.to_dict()},
        )
        order.last_processing_error_code = None
        order.last_processing_error_message = None
        self._transition(session, order, ProcessingStatus.FULFILLED, ProcessingMode.AUTO, source)

    def _fail_credentials(
        self, session: Session, order: ShopeeOrder, url: str, source: str, evaluation: Evaluation, reason: str
    ) -> None:
        self._record_error(
            session, order, MISSING_AMAZON_CREDENTIALS, reason, url=url,
            profit=evaluation.profit.expected_profit,
            shipping_days=evaluation.shipping_days,
            stamp=True,
        )
        self._transition(
            session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.AUTO, source, MISSING_AMAZON_CREDENTIALS
        )

    # ------------------------------------------------------------------
    # 분류 (poll-shop 이후)
    # ------------------------------------------------------------------

    async def classify_shop_orders(self, shop_id: str | uuid.UUID) -> dict[str, int]:
        """
        샵의 UNPROCESSED 주문을 평가합니다. AUTO_FULFILL이면 QUEUED로 바꾸고 process-order를 등록합니다.
        주문 하나의 실패가 나머지를 막지 않습니다.
        """
        stats = {"evaluated": 0, "queued": 0, "failed": 0}
        shop_uuid = _as_uuid(shop_id)

        with self.session_factory() as session:
            setting = session.execute(
                select(AutoShippingSetting).where(AutoShippingSetting.shop_id == shop_uuid)
            ).scalars().first()
            if setting is None or not setting.is_active:
                return stats

            order_ids = session.execute(
                select(ShopeeOrder.id)
                .where(ShopeeOrder.shop_id == shop_uuid)
                .where(ShopeeOrder.processing_status == ProcessingStatus.UNPROCESSED)
                .order_by(ShopeeOrder.created_at)
            ).scalars().all()

        for order_id in order_ids:
            try:
                queued = await self._classify_one(order_id)
                stats["evaluated"] += 1
                if queued:
                    stats["queued"] += 1
            except Exception:
                logger.exception(f"[PIPELINE] Classification failed for order {order_id}")
                stats["failed"] += 1

        logger.info(f"[PIPELINE] Classified shop {shop_id}: {stats}")
        return stats

    async def _classify_one(self, order_id: uuid.UUID) -> bool:
        source = "classify"
        scrape: ScrapeSession | None = None
        with self.session_factory() as session:
            order = session.get(ShopeeOrder, order_id)
            if order is None or order.processing_status != ProcessingStatus.UNPROCESSED:
                return False
            if order.shopee_status not in ACTIONABLE_SHOPEE_STATUSES:
                return False
            setting = session.execute(
                select(AutoShippingSetting).where(AutoShippingSetting.shop_id == order.shop_id)
            ).scalars().first()

            try:
                url = self.resolve_product_url(session, order)
                if not url:
                    self._record_error(session, order, MISSING_MAPPING, "No Amazon product mapping found for this Shopee item.")
                    self._transition(session, order, ProcessingStatus.MANUAL_REVIEW, ProcessingMode.MANUAL, source, MISSING_MAPPING)
                    session.commit()
                    return False
                order.amazon_product_url = url

                scrape, ok = await self._scrape(session, order, url, source)
                if not ok:
                    session.commit()
                    return False

                evaluation = self.evaluate(order, setting, scrape.result)
                self._apply_snapshot(order, setting, evaluation)
                if not self._route_decision(session, order, setting, url, scrape.result, evaluation, source):
                    session.commit()
                    return False

                self._transition(session, order, ProcessingStatus.QUEUED, ProcessingMode.AUTO, source)
                session.commit()
            finally:
                if scrape is not None:
                    await scrape.close()

            self.queue.add(PROCESS_ORDER, {"shopeeOrderId": str(order.id), "shopId": str(order.shop_id)})
            return True

    # ------------------------------------------------------------------
    # 운영자 재시도
    # ------------------------------------------------------------------

    def retry_order(self, order_id: str | uuid.UUID, source: str = "UI") -> dict[str, Any]:
        with self.session_factory() as session:
            order = session.get(ShopeeOrder, _as_uuid(order_id))
            if order is None:
                raise LookupError(f"order {order_id} not found")
            if order.processing_status == ProcessingStatus.FULFILLED:
                raise ValueError(f"order {order.shopee_order_sn} is already fulfilled")

            self._transition(
                session, order, ProcessingStatus.QUEUED, ProcessingMode.MANUAL, f"retry:{source}", "operator retry"
            )
            session.commit()
            data = {"shopeeOrderId": str(order.id), "shopId": str(order.shop_id), "retrySource": source}

        job = self.queue.add(PROCESS_ORDER, data)
        return {"jobId": str(job.id), **data}


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _outcome(order: ShopeeOrder, evaluation: Evaluation | None = None) -> dict[str, Any]:
    outcome: dict[str, Any] = {
        "orderSn": order.shopee_order_sn,
        "status": order.processing_status.value,
        "mode": order.processing_mode.value if order.processing_mode else None,
    }
    if evaluation is not None:
        outcome["decision"] = evaluation.decision.decision.value
        outcome["reason"] = evaluation.decision.reason.value if evaluation.decision.reason else None
        outcome["expectedProfit"] = str(evaluation.profit.expected_profit)
        outcome["shippingDays"] = evaluation.shipping_days
    return outcome
