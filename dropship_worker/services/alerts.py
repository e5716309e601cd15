from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from dropship_worker.settings import settings

logger = logging.getLogger(__name__)

# 운영 알림 코드
SHOPEE_CONFIG_ERROR = "SHOPEE_CONFIG_ERROR"
SHOPEE_POLL_FAIL = "SHOPEE_POLL_FAIL"
SHOPEE_UPSERT_FAIL = "SHOPEE_UPSERT_FAIL"
SHOPEE_CREDENTIAL_FAIL = "SHOPEE_CREDENTIAL_FAIL"
AMAZON_CREDENTIAL_FAIL = "AMAZON_CREDENTIAL_FAIL"


class AlertSender:
    """
    운영 알림 웹훅 발송기.
    발송 실패는 로그만 남기고 삼킵니다. 알림 실패로 워커가 죽으면 안 됩니다.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        attempts: int = 3,
    ) -> None:
        self.webhook_url = settings.alert_webhook_url if webhook_url is None else webhook_url
        self._transport = transport
        self._attempts = max(1, attempts)

    async def send(
        self,
        code: str,
        message: str,
        order_id: str | None = None,
        shop_id: str | None = None,
    ) -> bool:
        if not self.webhook_url:
            logger.warning(f"[ALERT] {code}: {message} (webhook not configured)")
            return False

        payload = {
            "code": code,
            "message": message,
            "orderId": order_id,
            "shopId": shop_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception_type(httpx.HTTPError),
                reraise=False,
            ):
                with attempt:
                    async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                        resp = await client.post(self.webhook_url, json=payload)
                        resp.raise_for_status()
        except RetryError as e:
            logger.error(f"[ALERT] Failed to send {code}: {e.last_attempt.exception()}")
            return False
        except Exception as e:
            logger.error(f"[ALERT] Failed to send {code}: {e}")
            return False

        logger.info(f"[ALERT] Sent {code} shop={shop_id} order={order_id}")
        return True
