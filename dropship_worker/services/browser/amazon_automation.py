from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from playwright.async_api import BrowserContext, Page
from playwright.async_api import Error as PlaywrightError

from dropship_worker.services.browser import selectors as sel
from dropship_worker.services.browser.session_pool import SessionPool
from dropship_worker.settings import settings

logger = logging.getLogger(__name__)

_ASIN_RE = re.compile(r"/(?:dp|gp/product)/([A-Z0-9]{10})")
_MAX_CART_REMOVALS = 20


class AutomationErrorCode(str, enum.Enum):
    AMAZON_LOGIN_FAILED = "AMAZON_LOGIN_FAILED"
    AMAZON_2FA_REQUIRED = "AMAZON_2FA_REQUIRED"
    AMAZON_SCRAPE_FAILED = "AMAZON_SCRAPE_FAILED"
    AMAZON_ADD_TO_CART_FAILED = "AMAZON_ADD_TO_CART_FAILED"
    AMAZON_CHECKOUT_FAILED = "AMAZON_CHECKOUT_FAILED"
    ADDRESS_NOT_FOUND = "ADDRESS_NOT_FOUND"
    AMAZON_PURCHASE_FAILED = "AMAZON_PURCHASE_FAILED"
    ORDER_CONFIRMATION_FAILED = "ORDER_CONFIRMATION_FAILED"
    ORDER_ID_NOT_FOUND = "ORDER_ID_NOT_FOUND"


class AutomationError(Exception):
    """
    브라우저 자동화 실패.

    Attributes:
        code: AutomationErrorCode
        message: 사람이 읽는 설명
        screenshot_path: 실패 시점 전체 페이지 스크린샷 (운영자 확인용)
    """

    def __init__(self, code: AutomationErrorCode, message: str, screenshot_path: str | None = None):
        self.code = AutomationErrorCode(code)
        self.message = message
        self.screenshot_path = screenshot_path
        super().__init__(f"{self.code.value}: {message}")


@dataclass
class ScrapeResult:
    product_url: str
    price: Decimal | None  # None이면 가격 파싱 실패
    currency: str | None
    is_available: bool
    is_new: bool
    estimated_delivery: datetime | None = None
    points_earned: int | None = None
    shipping_text: str | None = None
    title: str | None = None
    asin: str | None = None
    scraped_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "productUrl": self.product_url,
            "price": float(self.price) if self.price is not None else None,
            "currency": self.currency,
            "isAvailable": self.is_available,
            "isNew": self.is_new,
            "estimatedDelivery": self.estimated_delivery.isoformat() if self.estimated_delivery else None,
            "pointsEarned": self.points_earned,
            "shippingText": self.shipping_text,
            "title": self.title,
            "asin": self.asin,
            "scrapedAt": self.scraped_at.isoformat(),
        }


@dataclass
class CheckoutResult:
    amazon_order_id: str
    final_price: Decimal | None = None
    currency: str | None = None
    shipping_cost: Decimal | None = None
    points_used: Decimal | None = None


class ScrapeSession:
    """상품 조회 결과와 조회에 사용한 일회용 컨텍스트. close()는 여러 번 호출해도 한 번만 닫습니다."""

    def __init__(self, context: BrowserContext, result: ScrapeResult) -> None:
        self.context = context
        self.result = result
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.context.close()
        except PlaywrightError as e:
            logger.warning(f"[BROWSER] Scrape context close failed: {e}")


async def first_text(page: Page, candidates: tuple[str, ...]) -> str | None:
    for candidate in candidates:
        el = await page.query_selector(candidate)
        if el is None:
            continue
        text = await el.text_content()
        if text and text.strip():
            return text.strip()
    return None


def extract_asin(url: str) -> str | None:
    match = _ASIN_RE.search(url or "")
    return match.group(1) if match else None


class AmazonAutomation:
    """Amazon 상품 조회 / 구매 / 로그인 확인"""

    def __init__(
        self,
        pool: SessionPool,
        base_url: str | None = None,
        screenshot_dir: str | Path | None = None,
    ) -> None:
        self.pool = pool
        self.base_url = (base_url or settings.amazon_base_url).rstrip("/")
        self.screenshot_dir = Path(screenshot_dir or settings.screenshot_dir)

    async def capture_screenshot(self, page: Page, prefix: str) -> str | None:
        path = self.screenshot_dir / f"{prefix}-{int(time.time() * 1000)}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path), full_page=True)
        except (PlaywrightError, OSError) as e:
            # 스크린샷 실패가 원래 오류를 가리면 안 됨
            logger.warning(f"[BROWSER] Screenshot failed ({prefix}): {e}")
            return None
        return str(path)

    async def _fail(self, page: Page, code: AutomationErrorCode, message: str, prefix: str) -> AutomationError:
        shot = await self.capture_screenshot(page, prefix)
        logger.warning(f"[BROWSER] {code.value}: {message} (screenshot={shot})")
        return AutomationError(code, message, shot)

    # ------------------------------------------------------------------
    # 상품 조회
    # ------------------------------------------------------------------

    async def scrape_product(self, product_url: str) -> ScrapeSession:
        """
        상품 페이지를 읽습니다. 필드 파싱 실패는 예외가 아니라 None/False 값으로 돌려줍니다.
        반환된 ScrapeSession은 호출자가 close() 해야 합니다.
        """
        context = await self.pool.new_scrape_context()
        try:
            page = await context.new_page()
            try:
                await page.goto(product_url, wait_until="networkidle")
            except PlaywrightError as e:
                raise await self._fail(
                    page, AutomationErrorCode.AMAZON_SCRAPE_FAILED, f"Navigation failed: {e}", "scrape-failed"
                ) from e

            price_text = await first_text(page, sel.PRICE)
            availability_text = await first_text(page, sel.AVAILABILITY)
            condition_text = await first_text(page, sel.CONDITION)
            delivery_text = await first_text(page, sel.DELIVERY)
            points_text = await first_text(page, sel.POINTS)
            title = await first_text(page, sel.TITLE)
        except BaseException:
            try:
                await context.close()
            except PlaywrightError as close_err:
                logger.warning(f"[BROWSER] Scrape context close failed: {close_err}")
            raise

        price, currency = sel.parse_price(price_text)
        result = ScrapeResult(
            product_url=product_url,
            price=price,
            currency=currency,
            is_available=sel.is_available(availability_text),
            is_new=sel.is_new_condition(condition_text),
            estimated_delivery=sel.parse_delivery_date(delivery_text),
            points_earned=sel.parse_points(points_text),
            shipping_text=delivery_text,
            title=title,
            asin=extract_asin(product_url),
        )
        logger.info(
            f"[BROWSER] Scraped {result.asin or product_url}: price={result.price} {result.currency} "
            f"available={result.is_available} new={result.is_new}"
        )
        return ScrapeSession(context, result)

    async def preview(self, product_url: str) -> dict[str, Any]:
        """운영 화면용 상품 조회 미리보기. 컨텍스트는 항상 닫습니다."""
        scrape: ScrapeSession | None = None
        try:
            scrape = await self.scrape_product(product_url)
            return {"ok": True, "result": scrape.result.to_dict()}
        except AutomationError as e:
            return {
                "ok": False,
                "error": {"code": e.code.value, "message": e.message, "screenshotPath": e.screenshot_path},
            }
        finally:
            if scrape is not None:
                await scrape.close()

    # ------------------------------------------------------------------
    # 로그인
    # ------------------------------------------------------------------

    async def ensure_logged_in(self, page: Page, email: str, password: str) -> None:
        await page.goto(f"{self.base_url}/ap/signin", wait_until="networkidle")

        email_input = await page.query_selector(sel.LOGIN_EMAIL)
        password_input = await page.query_selector(sel.LOGIN_PASSWORD)
        if email_input is None and password_input is None:
            # 저장된 세션으로 이미 로그인된 상태
            return

        if email_input is not None:
            await page.fill(sel.LOGIN_EMAIL, email)
            await page.click(sel.LOGIN_CONTINUE)
        await page.fill(sel.LOGIN_PASSWORD, password)
        await page.click(sel.LOGIN_SUBMIT)
        try:
            await page.wait_for_load_state("networkidle")
        except PlaywrightError:
            pass

        if await page.query_selector(sel.TWO_FACTOR) is not None:
            raise await self._fail(
                page,
                AutomationErrorCode.AMAZON_2FA_REQUIRED,
                "2FA required. Manual intervention needed.",
                "amazon-2fa",
            )
        if await page.query_selector(sel.LOGIN_PASSWORD) is not None:
            raise await self._fail(
                page, AutomationErrorCode.AMAZON_LOGIN_FAILED, "Login form still shown after submit", "amazon-login"
            )

    async def verify_login(self, email: str, password: str) -> None:
        """계정 상태 점검 (자격증명 검증 작업용). 성공 시 세션을 저장합니다."""
        async with self.pool.lease(email) as context:
            page = await context.new_page()
            try:
                await self.ensure_logged_in(page, email, password)
                await self.pool.persist(email, context)
            except AutomationError:
                raise
            except Exception as e:
                raise await self._fail(page, AutomationErrorCode.AMAZON_LOGIN_FAILED, str(e), "amazon-login") from e
            finally:
                await _close_page(page)

    # ------------------------------------------------------------------
    # 구매
    # ------------------------------------------------------------------

    async def purchase(
        self,
        product_url: str,
        shipping_label: str,
        login_email: str,
        login_password: str,
    ) -> CheckoutResult:
        """
        실제 구매를 진행합니다. 시작되면 중간 취소하지 않습니다.
        모든 실패는 코드가 붙은 AutomationError(스크린샷 포함)로 올라옵니다.
        """
        async with self.pool.lease(login_email) as context:
            page = await context.new_page()
            try:
                await self.ensure_logged_in(page, login_email, login_password)
                result = await self.checkout(page, product_url, shipping_label)
                await self.pool.persist(login_email, context)
                return result
            except AutomationError:
                raise
            except Exception as e:
                raise await self._fail(
                    page, AutomationErrorCode.AMAZON_PURCHASE_FAILED, str(e) or type(e).__name__, "amazon-failure"
                ) from e
            finally:
                await _close_page(page)

    async def checkout(self, page: Page, product_url: str, shipping_label: str) -> CheckoutResult:
        await self.clear_cart(page)

        # 1. 장바구니 담기
        await page.goto(product_url, wait_until="networkidle")
        if not await _click_first(page, sel.ADD_TO_CART):
            raise await self._fail(
                page, AutomationErrorCode.AMAZON_ADD_TO_CART_FAILED, "Add to cart failed", "add-to-cart-failed"
            )
        await _settle(page)

        # 2. 결제 진행
        await page.goto(f"{self.base_url}/gp/cart/view.html", wait_until="networkidle")
        if not await _click_first(page, sel.PROCEED_TO_CHECKOUT):
            raise await self._fail(
                page, AutomationErrorCode.AMAZON_CHECKOUT_FAILED, "Proceed to checkout failed", "proceed-checkout-failed"
            )
        await _settle(page)

        # 3. 배송지 선택
        await self.select_address(page, shipping_label)

        # 4. 주문 확정
        if not await _click_first(page, sel.PLACE_ORDER):
            raise await self._fail(
                page, AutomationErrorCode.AMAZON_PURCHASE_FAILED, "Place order failed", "place-order-failed"
            )
        await _settle(page)

        # 5. 주문 완료 확인 (애매하면 실패로 처리)
        confirmed = False
        for candidate in sel.ORDER_CONFIRMATION:
            if await page.query_selector(candidate) is not None:
                confirmed = True
                break
        if not confirmed:
            raise await self._fail(
                page,
                AutomationErrorCode.ORDER_CONFIRMATION_FAILED,
                "Order confirmation marker not found after placing order",
                "order-confirmation-failed",
            )

        # 6. 주문번호 추출. 확인 화면은 떴으므로 실제 주문이 됐을 수 있음
        order_id = sel.parse_order_id(await first_text(page, sel.ORDER_ID))
        if order_id is None:
            order_id = sel.parse_order_id(await page.content())
        if order_id is None:
            raise await self._fail(
                page,
                AutomationErrorCode.ORDER_ID_NOT_FOUND,
                "Order confirmed but order id not found; reconcile with the Amazon account",
                "order-id-not-found",
            )

        final_price, currency = sel.parse_price(await first_text(page, sel.PRICE))
        logger.info(f"[BROWSER] Order placed: {order_id} price={final_price} {currency}")
        return CheckoutResult(amazon_order_id=order_id, final_price=final_price, currency=currency)

    async def clear_cart(self, page: Page) -> int:
        """기존 장바구니 항목 삭제 (실패해도 진행)"""
        removed = 0
        try:
            await page.goto(f"{self.base_url}/gp/cart/view.html", wait_until="networkidle")
        except PlaywrightError as e:
            logger.warning(f"[BROWSER] Cart page unavailable, skipping cleanup: {e}")
            return 0

        for _ in range(_MAX_CART_REMOVALS):
            if not await _click_first(page, sel.CART_ITEM_DELETE):
                break
            removed += 1
            await _settle(page)
        if removed:
            logger.info(f"[BROWSER] Removed {removed} stale cart item(s)")
        return removed

    async def select_address(self, page: Page, label: str) -> None:
        try:
            await page.wait_for_selector(sel.ADDRESS_WAIT, timeout=10000)
        except PlaywrightError:
            pass

        entries = await page.query_selector_all(sel.ADDRESS_ENTRY)
        texts = [(await entry.text_content()) or "" for entry in entries]
        idx = sel.match_address(texts, label)
        if idx is None:
            raise await self._fail(
                page,
                AutomationErrorCode.ADDRESS_NOT_FOUND,
                f"Shipping address '{label}' not found ({len(entries)} candidates)",
                "address-not-found",
            )
        await entries[idx].click()
        await _settle(page)


async def _click_first(page: Page, candidates: tuple[str, ...]) -> bool:
    """후보를 순서대로 시도합니다. 클릭에 성공한 첫 후보에서 멈춥니다."""
    for candidate in candidates:
        el = await page.query_selector(candidate)
        if el is None:
            continue
        try:
            await el.click()
            return True
        except PlaywrightError as e:
            logger.debug(f"[BROWSER] Click failed on {candidate}: {e}")
    return False


async def _settle(page: Page) -> None:
    try:
        await page.wait_for_load_state("networkidle")
    except PlaywrightError:
        pass


async def _close_page(page: Page) -> None:
    try:
        await page.close()
    except PlaywrightError as e:
        logger.debug(f"[BROWSER] Page close failed: {e}")
