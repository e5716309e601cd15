from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from dropship_worker.models import (
    ACTIONABLE_SHOPEE_STATUSES,
    IN_FLIGHT_PROCESSING_STATUSES,
    ProductMapping,
    Shop,
    ShopeeCredential,
    ShopeeOrder,
    ShopeeStatus,
)
from dropship_worker.services import alerts as alert_codes
from dropship_worker.services.alerts import AlertSender
from dropship_worker.services.job_queue import POLL_SHOP, JobQueue
from dropship_worker.services.order_pipeline import OrderPipeline
from dropship_worker.services.secret_box import SecretBoxError, decrypt_secret
from dropship_worker.settings import settings
from dropship_worker.shopee_client import ShopeeApiError, ShopeeClient, map_shopee_status

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ShopeeCredential, Shop, str, str | None], ShopeeClient]


def default_client_factory(
    credential: ShopeeCredential,
    shop: Shop,
    partner_key: str,
    access_token: str | None,
) -> ShopeeClient:
    return ShopeeClient(
        partner_id=credential.partner_id,
        partner_key=partner_key,
        shop_id=shop.shopee_shop_id,
        access_token=access_token,
        base_url=credential.base_url,
    )


def decrypt_shopee_credential(credential: ShopeeCredential, aes_key: str) -> tuple[str, str | None]:
    """(partner_key, access_token) 복호화. 실패 시 SecretBoxError."""
    partner_key = decrypt_secret(credential.partner_key_encrypted, credential.partner_key_iv, aes_key)
    access_token = None
    if credential.access_token_encrypted and credential.access_token_iv:
        access_token = decrypt_secret(credential.access_token_encrypted, credential.access_token_iv, aes_key)
    return partner_key, access_token


def poll_job_id(shop_id: str) -> str:
    return f"poll-{shop_id}"


def set_auto_shipping(queue: JobQueue, shop_id: str, active: bool, every_ms: int | None = None) -> dict[str, Any]:
    """
    샵 자동화 on/off에 따라 poll-shop 반복 작업을 등록/해제합니다.
    등록은 멱등이며, 해제는 해당 샵 키를 가진 모든 등록을 지웁니다.
    """
    job_id = poll_job_id(shop_id)
    if active:
        interval = every_ms or settings.poll_interval_seconds * 1000
        repeatable = queue.add_repeatable(POLL_SHOP, {"shopId": shop_id}, job_id=job_id, every_ms=interval)
        return {"shopId": shop_id, "active": True, "key": repeatable.key}

    removed = []
    for repeatable in queue.get_repeatable_jobs():
        if repeatable.name == POLL_SHOP and job_id in repeatable.key.split(":"):
            queue.remove_repeatable_by_key(repeatable.key)
            removed.append(repeatable.key)
    logger.info(f"[POLL] Auto shipping disabled for shop {shop_id}; removed {len(removed)} repeatable(s)")
    return {"shopId": shop_id, "active": False, "removed": removed}


class ShopeeOrderSync:
    """
    Shopee 주문 폴링 (poll-shop).

    - 마지막 성공 폴링 시각 이후 주문만 조회하고, 조회 실패 시 시각을 갱신하지 않습니다.
    - 주문 단위 실패는 알림만 보내고 나머지 주문은 계속 처리합니다.
    - 끝나면 UNPROCESSED 주문 분류를 실행합니다.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline: OrderPipeline,
        alerts: AlertSender,
        aes_key: str | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.alerts = alerts
        self.aes_key = settings.aes_secret_key if aes_key is None else aes_key
        self.client_factory = client_factory or default_client_factory

    async def poll_shop(self, shop_id: str) -> dict[str, Any]:
        stats: dict[str, Any] = {"shopId": shop_id, "fetched": 0, "upserted": 0, "skipped": 0, "failed": 0}

        with self.session_factory() as session:
            shop = session.get(Shop, uuid.UUID(str(shop_id)))
            setting = shop.setting if shop else None
            if shop is None or setting is None or not setting.is_active:
                logger.info(f"[POLL] Shop {shop_id} missing or inactive, skipping")
                stats["status"] = "inactive"
                return stats

            credential = shop.shopee_credential
            if credential is None or not self.aes_key:
                await self.alerts.send(
                    alert_codes.SHOPEE_CONFIG_ERROR, f"Shop {shop_id} missing credentials", shop_id=shop_id
                )
                stats["status"] = "config_error"
                return stats
            try:
                partner_key, access_token = decrypt_shopee_credential(credential, self.aes_key)
            except SecretBoxError as e:
                await self.alerts.send(
                    alert_codes.SHOPEE_CONFIG_ERROR, f"Shop {shop_id} credentials unreadable: {e}", shop_id=shop_id
                )
                stats["status"] = "config_error"
                return stats

            client = self.client_factory(credential, shop, partner_key, access_token)
            poll_started = datetime.now(timezone.utc)
            try:
                orders = await client.list_new_orders(since=setting.last_shopee_polled_at, now=poll_started)
            except ShopeeApiError as e:
                # 시각을 갱신하지 않으므로 다음 주기에 같은 구간을 다시 조회
                logger.error(f"[POLL] Order list failed for shop {shop_id}: {e}")
                await self.alerts.send(alert_codes.SHOPEE_POLL_FAIL, str(e), shop_id=shop_id)
                stats["status"] = "poll_failed"
                return stats

            setting.last_shopee_polled_at = poll_started
            session.commit()
            stats["fetched"] = len(orders)
            logger.info(f"[POLL] Shop {shop_id}: {len(orders)} order(s) since last poll")

            for summary in orders:
                order_sn = str(summary.get("order_sn") or "")
                try:
                    if await self._sync_order(session, client, shop, summary):
                        stats["upserted"] += 1
                    else:
                        stats["skipped"] += 1
                except Exception as e:
                    session.rollback()
                    stats["failed"] += 1
                    logger.exception(f"[POLL] Upsert failed for order {order_sn} (shop {shop_id})")
                    await self.alerts.send(
                        alert_codes.SHOPEE_UPSERT_FAIL,
                        f"Order {order_sn}: {e}",
                        order_id=order_sn or None,
                        shop_id=shop_id,
                    )

        stats["classification"] = await self.pipeline.classify_shop_orders(shop_id)
        stats["status"] = "ok"
        return stats

    async def _sync_order(self, session: Session, client: ShopeeClient, shop: Shop, summary: dict[str, Any]) -> bool:
        order_sn = str(summary.get("order_sn") or "")
        if not order_sn:
            raise ValueError("order_sn missing in order list entry")

        existing = session.execute(
            select(ShopeeOrder).where(ShopeeOrder.shopee_order_sn == order_sn)
        ).scalars().first()
        if existing is not None and existing.processing_status in IN_FLIGHT_PROCESSING_STATUSES:
            logger.debug(f"[POLL] Order {order_sn} already {existing.processing_status.value}, skipping")
            return False

        status = map_shopee_status(summary.get("order_status") or summary.get("status"))
        if status not in ACTIONABLE_SHOPEE_STATUSES:
            return False

        detail = await client.get_order_detail(order_sn) or summary
        detail_status = detail.get("order_status") or detail.get("status")
        if detail_status:
            status = map_shopee_status(detail_status)

        # 상류 payload에 이미 해석된 URL이 있으면 매핑보다 우선
        url = detail.get("amazonProductUrl") or self._resolve_mapping(session, shop, detail)
        self._upsert_order(session, shop, existing, order_sn, status, detail, url)
        session.commit()
        return True

    @staticmethod
    def _resolve_mapping(session: Session, shop: Shop, detail: dict[str, Any]) -> str | None:
        """상품 목록을 순서대로 보며 첫 활성 매핑을 찾습니다."""
        for item in detail.get("item_list") or []:
            item_id = item.get("item_id")
            if item_id is None:
                continue
            mapping = session.execute(
                select(ProductMapping)
                .where(ProductMapping.shop_id == shop.id)
                .where(ProductMapping.shopee_item_id == str(item_id))
                .where(ProductMapping.is_active.is_(True))
            ).scalars().first()
            if mapping:
                return mapping.amazon_product_url
        return None

    @staticmethod
    def _upsert_order(
        session: Session,
        shop: Shop,
        existing: ShopeeOrder | None,
        order_sn: str,
        status: ShopeeStatus,
        detail: dict[str, Any],
        url: str | None,
    ) -> ShopeeOrder:
        order = existing
        if order is None:
            order = ShopeeOrder(
                shop_id=shop.id,
                shopee_order_sn=order_sn,
                order_total=Decimal(str(detail.get("total_amount") or 0)),
                currency=detail.get("currency") or settings.default_currency,
                buyer_address_json=detail.get("recipient_address") or None,
            )
            session.add(order)

        # 기존 주문은 마켓 상태와 원본 payload만 갱신
        order.shopee_status = status
        order.raw_payload = detail
        if url:
            order.amazon_product_url = url
        return order
