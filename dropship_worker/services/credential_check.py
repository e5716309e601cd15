from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from dropship_worker.models import Shop
from dropship_worker.services import alerts as alert_codes
from dropship_worker.services.alerts import AlertSender
from dropship_worker.services.browser.amazon_automation import AmazonAutomation, AutomationError
from dropship_worker.services.secret_box import SecretBoxError, decrypt_secret
from dropship_worker.settings import settings
from dropship_worker.shopee_client import ShopeeApiError
from dropship_worker.sync.shopee_order_sync import ClientFactory, decrypt_shopee_credential, default_client_factory

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
FAILED = "failed"
_MAX_ERROR_LENGTH = 500


def _stamp(credential: Any, ok: bool, error: str | None = None) -> None:
    credential.last_validated_at = datetime.now(timezone.utc)
    credential.last_validation_status = HEALTHY if ok else FAILED
    credential.last_validation_error = None if ok else (error or "")[:_MAX_ERROR_LENGTH]


class CredentialVerifier:
    """샵의 Shopee/Amazon 자격증명 점검 (verify-credentials)"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        automation: AmazonAutomation,
        alerts: AlertSender,
        aes_key: str | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.automation = automation
        self.alerts = alerts
        self.aes_key = settings.aes_secret_key if aes_key is None else aes_key
        self.client_factory = client_factory or default_client_factory

    async def verify(self, shop_id: str) -> dict[str, Any]:
        result: dict[str, Any] = {"shopId": shop_id, "shopee": None, "amazon": None}
        if not self.aes_key:
            logger.error("[WORKER] AES key not configured; cannot verify credentials")
            result["error"] = "AES key not configured"
            return result

        with self.session_factory() as session:
            shop = session.get(Shop, uuid.UUID(str(shop_id)))
            if shop is None:
                logger.warning(f"[WORKER] Shop {shop_id} not found for credential check")
                result["error"] = "shop not found"
                return result

            if shop.shopee_credential is not None:
                result["shopee"] = await self._verify_shopee(shop)
            if shop.amazon_credential is not None:
                result["amazon"] = await self._verify_amazon(shop)
            session.commit()

        logger.info(f"[WORKER] Credential check for shop {shop_id}: shopee={result['shopee']} amazon={result['amazon']}")
        return result

    async def _verify_shopee(self, shop: Shop) -> str:
        credential = shop.shopee_credential
        try:
            partner_key, access_token = decrypt_shopee_credential(credential, self.aes_key)
            client = self.client_factory(credential, shop, partner_key, access_token)
            await client.get_shop_info()
        except (SecretBoxError, ShopeeApiError) as e:
            _stamp(credential, False, str(e))
            await self.alerts.send(alert_codes.SHOPEE_CREDENTIAL_FAIL, str(e), shop_id=str(shop.id))
            return FAILED
        _stamp(credential, True)
        return HEALTHY

    async def _verify_amazon(self, shop: Shop) -> str:
        credential = shop.amazon_credential
        try:
            password = decrypt_secret(credential.password_encrypted, credential.encryption_iv, self.aes_key)
            await self.automation.verify_login(credential.username, password)
        except (SecretBoxError, AutomationError) as e:
            _stamp(credential, False, str(e))
            await self.alerts.send(alert_codes.AMAZON_CREDENTIAL_FAIL, str(e), shop_id=str(shop.id))
            return FAILED
        _stamp(credential, True)
        return HEALTHY
