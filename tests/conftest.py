"""Pytest configuration and fixtures."""

from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dropship_worker.models import (
    AmazonCredential,
    AutoFulfillmentMode,
    AutoShippingSetting,
    Base,
    ProductMapping,
    Shop,
    ShopeeCredential,
    ShopeeOrder,
    ShopeeStatus,
)
from dropship_worker.services.browser.amazon_automation import AutomationError, ScrapeResult
from dropship_worker.services.secret_box import encrypt_secret

# 테스트용 AES 키 (hex 64자리)
TEST_AES_KEY = "0123456789abcdef" * 4


@pytest.fixture(scope="function")
def test_engine():
    """
    테스트용 메모리 SQLite 엔진.
    StaticPool로 모든 세션이 같은 메모리 DB를 공유합니다.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,  # 테스트 로그 줄이기
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def aes_key() -> str:
    return TEST_AES_KEY


@pytest.fixture
def make_shop(session_factory):
    """샵 + 자동화 설정 + (선택) 자격증명/매핑 생성 헬퍼"""

    def _make(
        amazon_credential: bool = True,
        shopee_credential: bool = True,
        mappings: dict[str, str] | None = None,
        **setting_overrides: Any,
    ) -> Shop:
        values = {
            "is_active": True,
            "is_dry_run": False,
            "auto_fulfillment_mode": AutoFulfillmentMode.AUTO_STRICT,
            "min_expected_profit": Decimal("1000"),
            "max_shipping_days": 7,
            "review_band_percent": None,
            "include_points": False,
            "include_domestic_shipping": False,
            "domestic_shipping_cost": Decimal("0"),
        }
        values.update(setting_overrides)

        with session_factory() as session:
            shop = Shop(name="Test Shop", shopee_shop_id="123456")
            session.add(shop)
            session.flush()
            session.add(AutoShippingSetting(shop_id=shop.id, **values))

            if amazon_credential:
                ciphertext, iv = encrypt_secret("amazon-password", TEST_AES_KEY)
                session.add(
                    AmazonCredential(
                        shop_id=shop.id,
                        username="buyer@example.com",
                        password_encrypted=ciphertext,
                        encryption_iv=iv,
                    )
                )
            if shopee_credential:
                key_ct, key_iv = encrypt_secret("partner-key", TEST_AES_KEY)
                token_ct, token_iv = encrypt_secret("access-token", TEST_AES_KEY)
                session.add(
                    ShopeeCredential(
                        shop_id=shop.id,
                        partner_id="2001",
                        partner_key_encrypted=key_ct,
                        partner_key_iv=key_iv,
                        access_token_encrypted=token_ct,
                        access_token_iv=token_iv,
                    )
                )
            for item_id, url in (mappings or {}).items():
                session.add(ProductMapping(shop_id=shop.id, shopee_item_id=item_id, amazon_product_url=url))
            session.commit()
            return shop

    return _make


@pytest.fixture
def make_order(session_factory):
    def _make(shop: Shop, order_sn: str = "230101ABCDEF", **overrides: Any) -> ShopeeOrder:
        values = {
            "shopee_status": ShopeeStatus.READY_TO_SHIP,
            "order_total": Decimal("15000"),
            "currency": "JPY",
            "raw_payload": {"order_sn": order_sn, "item_list": [{"item_id": 111, "item_name": "Widget"}]},
            "amazon_product_url": "https://www.amazon.co.jp/dp/B000TEST01",
        }
        values.update(overrides)
        with session_factory() as session:
            order = ShopeeOrder(shop_id=shop.id, shopee_order_sn=order_sn, **values)
            session.add(order)
            session.commit()
            return order

    return _make


class FakeScrapeSession:
    def __init__(self, result: ScrapeResult) -> None:
        self.result = result
        self.close_calls = 0
        self.closed = False

    async def close(self) -> None:
        # 실제 세션과 동일하게 멱등. 컨텍스트 종료 횟수는 closed 전이로 센다
        if self.closed:
            return
        self.closed = True
        self.close_calls += 1


class FakeAutomation:
    """AmazonAutomation 대체 (브라우저 없이 파이프라인 검증용)"""

    def __init__(self) -> None:
        self.scrape_result: ScrapeResult | None = None
        self.scrape_error: Exception | None = None
        self.purchase_result = None
        self.purchase_error: Exception | None = None
        self.sessions: list[FakeScrapeSession] = []
        self.purchases: list[tuple] = []
        self.logins: list[tuple] = []
        self.login_error: AutomationError | None = None

    async def scrape_product(self, url: str) -> FakeScrapeSession:
        if self.scrape_error is not None:
            raise self.scrape_error
        session = FakeScrapeSession(self.scrape_result)
        self.sessions.append(session)
        return session

    async def purchase(self, product_url, shipping_label, login_email, login_password):
        self.purchases.append((product_url, shipping_label, login_email, login_password))
        if self.purchase_error is not None:
            raise self.purchase_error
        return self.purchase_result

    async def verify_login(self, email, password):
        self.logins.append((email, password))
        if self.login_error is not None:
            raise self.login_error


@pytest.fixture
def fake_automation() -> FakeAutomation:
    return FakeAutomation()


class FakeAlerts:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(self, code, message, order_id=None, shop_id=None) -> bool:
        self.sent.append({"code": code, "message": message, "orderId": order_id, "shopId": shop_id})
        return True

    def codes(self) -> list[str]:
        return [a["code"] for a in self.sent]


@pytest.fixture
def fake_alerts() -> FakeAlerts:
    return FakeAlerts()


@pytest.fixture
def scrape_result():
    """구매 가능한 신품 조회 결과 생성 헬퍼"""

    def _make(**overrides: Any) -> ScrapeResult:
        values = {
            "product_url": "https://www.amazon.co.jp/dp/B000TEST01",
            "price": Decimal("12000"),
            "currency": "JPY",
            "is_available": True,
            "is_new": True,
            "estimated_delivery": None,
            "points_earned": None,
        }
        values.update(overrides)
        return ScrapeResult(**values)

    return _make


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (실제 DB/API 필요)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
