from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from dropship_worker.models import ShopeeStatus
from dropship_worker.settings import settings

logger = logging.getLogger(__name__)

SHOP_INFO_PATH = "/api/v2/shop/get_shop_info"
ORDER_LIST_PATH = "/api/v2/order/get_order_list"
ORDER_DETAIL_PATH = "/api/v2/order/get_order_detail"


class ShopeeApiError(Exception):
    """Shopee 호출 실패 (HTTP 오류, 응답 내 error 필드, 네트워크 오류)"""

    def __init__(
        self,
        path: str,
        status_code: int | None,
        body: Any = None,
        error_code: str | None = None,
        request_id: str | None = None,
        message: str | None = None,
    ) -> None:
        self.path = path
        self.status_code = status_code
        self.body = body
        self.error_code = error_code or "UNKNOWN_ERROR"
        self.request_id = request_id or ""
        self.message = message or "Unknown error"
        super().__init__(
            f"Shopee {path} failed [{self.error_code}]: {self.message} (request_id: {self.request_id})"
        )


class RateLimiter:
    """호출 간 최소 간격을 보장합니다. 여러 작업이 동시에 호출해도 직렬화됩니다."""

    def __init__(self, calls_per_second: float) -> None:
        self.min_interval = 1.0 / calls_per_second if calls_per_second > 0 else 0.0
        self._last_call = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_call = time.monotonic()


# 파트너 호출 한도는 프로세스 전체에서 공유
shared_rate_limiter = RateLimiter(settings.shopee_requests_per_second)


class ShopeeClient:
    """
    Shopee OpenAPI v2 읽기 전용 클라이언트.

    내부 재시도는 하지 않습니다. 서명 timestamp가 매 시도마다 새로 만들어져야 하므로
    재시도는 호출자(작업 큐)의 몫입니다.
    """

    def __init__(
        self,
        partner_id: str,
        partner_key: str,
        shop_id: str,
        access_token: str | None = None,
        base_url: str | None = None,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self._partner_id = str(partner_id)
        self._partner_key = partner_key
        self._shop_id = str(shop_id)
        self._access_token = access_token or None
        self._base_url = (base_url or settings.shopee_base_url).rstrip("/")
        self._rate_limiter = rate_limiter or shared_rate_limiter
        self._transport = transport
        self._timeout = timeout or httpx.Timeout(settings.shopee_timeout_seconds, connect=10.0)

    def sign(self, path: str, timestamp: int) -> str:
        """
        서명 문자열: {partner_id}{path}{timestamp}{access_token}{shop_id}
        HMAC-SHA256(partner_key) hex digest
        """
        base = f"{self._partner_id}{path}{timestamp}{self._access_token or ''}{int(self._shop_id)}"
        return hmac.new(
            self._partner_key.encode("utf-8"),
            base.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        await self._rate_limiter.wait()

        timestamp = int(time.time())
        params: dict[str, Any] = {
            "partner_id": self._partner_id,
            "timestamp": timestamp,
            "sign": self.sign(path, timestamp),
        }
        if self._access_token:
            params["access_token"] = self._access_token
        params["shop_id"] = self._shop_id

        request_body = {"shop_id": int(self._shop_id), **body}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(f"{self._base_url}{path}", params=params, json=request_body)
        except httpx.RequestError as e:
            raise ShopeeApiError(path, None, body=str(e), error_code="NETWORK_ERROR", message=str(e)) from e

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {"_raw_text": resp.text[:500]}
        if not isinstance(data, dict):
            data = {"_raw": data}

        if resp.status_code >= 300 or data.get("error"):
            raise ShopeeApiError(
                path,
                resp.status_code,
                body=data,
                error_code=data.get("error") or None,
                request_id=data.get("request_id"),
                message=data.get("message") or data.get("msg"),
            )

        logger.debug(f"[SHOPEE] {path} HTTP {resp.status_code} request_id={data.get('request_id')}")
        return data

    async def get_shop_info(self) -> dict[str, Any]:
        data = await self._post(SHOP_INFO_PATH, {})
        return data.get("response") or {}

    async def list_new_orders(
        self,
        since: datetime | None = None,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """
        since 이후 갱신된 주문 목록.
        since가 없으면 최근 shopee_poll_fallback_seconds 구간을 조회합니다.
        """
        time_to = int((now or datetime.now(timezone.utc)).timestamp())
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            time_from = int(since.timestamp())
        else:
            time_from = time_to - settings.shopee_poll_fallback_seconds

        orders: list[dict[str, Any]] = []
        cursor = ""
        for _ in range(max(1, settings.shopee_max_pages)):
            body: dict[str, Any] = {
                "time_from": time_from,
                "time_to": time_to,
                "page_size": settings.shopee_page_size,
                "response_optional_fields": "order_status",
            }
            if cursor:
                body["cursor"] = cursor

            data = await self._post(ORDER_LIST_PATH, body)
            response = data.get("response") or {}
            orders.extend(response.get("order_list") or [])

            cursor = response.get("next_cursor") or ""
            if not response.get("more") or not cursor:
                break
        else:
            logger.warning(f"[SHOPEE] Page cap reached for shop {self._shop_id}; remaining orders deferred")

        return orders

    async def get_order_detail(self, order_sn: str) -> dict[str, Any] | None:
        data = await self._post(
            ORDER_DETAIL_PATH,
            {
                "order_sn_list": [order_sn],
                "response_optional_fields": "recipient_address,item_list,total_amount,buyer_username",
            },
        )
        order_list = (data.get("response") or {}).get("order_list") or []
        return order_list[0] if order_list else None


_STATUS_ALIASES: dict[ShopeeStatus, frozenset[str]] = {
    ShopeeStatus.READY_TO_SHIP: frozenset(
        {
            "READY_TO_SHIP",
            "READYTOSHIP",
            "AWAITING_SHIPMENT",
            "READY_TO_SHIP_AWAITING_PICKUP",
            "READY_TO_SHIP_SHIPPING",
            "PROCESSED",
            "RETRY_SHIP",
        }
    ),
    ShopeeStatus.SHIPPED: frozenset({"SHIPPED", "AWAITING_PICKUP", "IN_TRANSIT", "TO_CONFIRM_RECEIVE"}),
    ShopeeStatus.COMPLETED: frozenset({"COMPLETED", "DELIVERED"}),
    ShopeeStatus.CANCELLED: frozenset({"CANCELLED", "CANCELED", "IN_CANCEL"}),
    ShopeeStatus.RETURNED: frozenset({"RETURNED", "RETURN", "TO_RETURN"}),
}


def map_shopee_status(raw: str | None) -> ShopeeStatus:
    """Shopee 원문 상태를 내부 상태로 변환합니다. 모르는 값은 UNPAID."""
    if not raw:
        return ShopeeStatus.UNPAID
    normalized = re.sub(r"[_\s-]+", "_", str(raw).strip().upper())
    for status, aliases in _STATUS_ALIASES.items():
        if normalized in aliases:
            return status
    return ShopeeStatus.UNPAID
