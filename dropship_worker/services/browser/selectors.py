"""
Amazon 페이지 셀렉터 후보 목록과 텍스트 파서

페이지 마크업이 자주 바뀌므로 필드마다 우선순위 순으로 후보를 두고
처음 매칭되는 셀렉터를 사용합니다. 마크업 변경 대응은 이 모듈만 수정하면 됩니다.
"""
from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

PRICE = (
    "#priceblock_ourprice",
    "#priceblock_dealprice",
    "span.a-price span.a-offscreen",
    "#corePrice_feature_div .a-offscreen",
)
AVAILABILITY = ("#availability", "#availability span")
CONDITION = ("#conditionInfo", "#olp_feature_div")
DELIVERY = (
    "#mir-layout-DELIVERY_BLOCK-slot-PRIMARY_DELIVERY_MESSAGE_LARGE",
    "#mir-layout-DELIVERY_BLOCK-slot-PRIMARY_DELIVERY_MESSAGE",
    "#deliveryMessageMirId",
)
POINTS = ("#loyalty-points", "#apex_offerDisplay_desktop_summary", "#ppd-wallet-points-text")
TITLE = ("#productTitle", "#title")

ADD_TO_CART = ("#add-to-cart-button", "#buy-now-button", "input#add-to-cart-button")
PROCEED_TO_CHECKOUT = (
    "input[name='proceedToRetailCheckout']",
    "input#proceedToRetailCheckout",
    "a#hlb-ptc-btn-native",
)
PLACE_ORDER = ("input.place-your-order-button", "input[name='placeYourOrder1']", "input#submitOrderButtonId")
ORDER_CONFIRMATION = (
    "#widget-purchaseConfirmationStatus",
    "#thank-you-box",
    "#a-page .a-alert-success",
)
ORDER_ID = (
    "span.order-id",
    ".order-number",
    "#order-number",
    "[data-test-id='order-summary-primary-actions']",
)

CART_ITEM_DELETE = ("input[value='Delete']", "input[data-action='delete']", "span[data-action='delete'] input")
ADDRESS_ENTRY = ".address-book-entry"
ADDRESS_WAIT = "div#address-book-entry-0, .address-book-entry"

LOGIN_EMAIL = "input[name='email']"
LOGIN_CONTINUE = "input#continue"
LOGIN_PASSWORD = "input[name='password']"
LOGIN_SUBMIT = "input#signInSubmit"
TWO_FACTOR = "#auth-mfa-otpcode, #auth-mfa-otpcode-input, input[name='otpCode']"

# 주소 라벨 부분 일치 허용 여유 (비슷하지만 다른 주소 선택 방지)
ADDRESS_EXTRA_CHARS = 20

_CURRENCY_SYMBOLS = {"¥": "JPY", "￥": "JPY", "$": "USD", "€": "EUR", "£": "GBP"}
_AVAILABLE_RE = re.compile(r"in stock|available|在庫あり|残り|通常", re.IGNORECASE)
_UNAVAILABLE_RE = re.compile(r"unavailable|out of stock|在庫切れ|取り扱いできません", re.IGNORECASE)
_NEW_RE = re.compile(r"new|新品", re.IGNORECASE)
_USED_ONLY_RE = re.compile(r"^\s*(used|中古)", re.IGNORECASE)
_ORDER_ID_RE = re.compile(r"\d{3}-\d{7}-\d{7}")
_MONTH_DAY_EN_RE = re.compile(r"([A-Za-z]{3,})\.?\s+(\d{1,2})\b")
_MONTH_DAY_JP_RE = re.compile(r"(\d{1,2})月\s*(\d{1,2})日")
_DAY_JP_RE = re.compile(r"(\d{1,2})日")
_MONTHS = {name.lower(): idx for idx, name in enumerate(calendar.month_abbr) if name}


def parse_price(text: str | None) -> tuple[Decimal | None, str | None]:
    """
    가격 텍스트 파싱. 숫자/구분자 외 문자는 버립니다.
    파싱 실패 시 (None, currency)를 반환합니다. 예외를 던지지 않습니다.
    """
    if not text:
        return None, None
    symbol = re.search(r"[¥￥$€£]", text)
    currency = _CURRENCY_SYMBOLS[symbol.group(0)] if symbol else None

    digits = re.sub(r"[^\d.,]", "", text).replace(",", "")
    if not digits:
        return None, currency
    try:
        return Decimal(digits), currency
    except InvalidOperation:
        return None, currency


def is_available(text: str | None) -> bool:
    if not text or _UNAVAILABLE_RE.search(text):
        return False
    return bool(_AVAILABLE_RE.search(text))


def is_new_condition(text: str | None) -> bool:
    # 상태 표기가 없으면 신품으로 간주
    if not text:
        return True
    # "Used - Like New" 처럼 중고로 시작하는 표기는 신품 아님
    if _USED_ONLY_RE.search(text):
        return False
    return bool(_NEW_RE.search(text))


def parse_points(text: str | None) -> int | None:
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    return int(digits) or None


def parse_order_id(text: str | None) -> str | None:
    if not text:
        return None
    match = _ORDER_ID_RE.search(text)
    return match.group(0) if match else None


def _safe_date(year: int, month: int, day: int) -> date | None:
    if not 1 <= month <= 12:
        return None
    if not 1 <= day <= calendar.monthrange(year, month)[1]:
        return None
    return date(year, month, day)


def parse_delivery_date(text: str | None, now: datetime | None = None) -> datetime | None:
    """
    배송 예정일 텍스트 파싱 (연도 표기 없음).

    - "March 12" / "3月12日": 올해 날짜, 이미 지났으면 내년
    - "12日": 이번 달 날짜, 이미 지났으면 다음 달
    """
    if not text:
        return None
    now = now or datetime.now(timezone.utc)
    today = now.date()
    parsed: date | None = None

    match = _MONTH_DAY_JP_RE.search(text)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        parsed = _safe_date(today.year, month, day)
        if parsed and parsed < today:
            parsed = _safe_date(today.year + 1, month, day)

    if parsed is None:
        for m in _MONTH_DAY_EN_RE.finditer(text):
            month = _MONTHS.get(m.group(1)[:3].lower())
            if not month:
                continue
            day = int(m.group(2))
            parsed = _safe_date(today.year, month, day)
            if parsed and parsed < today:
                parsed = _safe_date(today.year + 1, month, day)
            if parsed:
                break

    if parsed is None:
        match = _DAY_JP_RE.search(text)
        if match:
            day = int(match.group(1))
            parsed = _safe_date(today.year, today.month, day)
            if parsed is None or parsed < today:
                year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
                parsed = _safe_date(year, month, day)

    if parsed is None:
        return None
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=now.tzinfo or timezone.utc)


def normalize_text(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def match_address(entries: list[str], label: str) -> int | None:
    """
    배송지 후보 중 선택할 인덱스.
    라벨과 정확히 같은 항목을 우선하고, 없으면 라벨을 포함하면서
    추가 글자가 ADDRESS_EXTRA_CHARS 이하인 항목을 고릅니다.
    """
    wanted = normalize_text(label)
    if not wanted:
        return None
    normalized = [normalize_text(t) for t in entries]

    for idx, text in enumerate(normalized):
        if text == wanted:
            return idx
    for idx, text in enumerate(normalized):
        if wanted in text and len(text) - len(wanted) <= ADDRESS_EXTRA_CHARS:
            return idx
    return None
