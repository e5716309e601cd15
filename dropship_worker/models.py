import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, ForeignKey, Integer, Numeric, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# PostgreSQL에서는 JSONB, 테스트(SQLite)에서는 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class ShopeeStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


# 처리 가능한(구매 진행 가능한) 마켓 상태
ACTIONABLE_SHOPEE_STATUSES = frozenset({ShopeeStatus.READY_TO_SHIP, ShopeeStatus.SHIPPED, ShopeeStatus.COMPLETED})


class ProcessingStatus(str, enum.Enum):
    UNPROCESSED = "UNPROCESSED"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    SKIPPED = "SKIPPED"
    FULFILLED = "FULFILLED"


# 폴링 시 재처리하지 않는 상태 (중복 수신 방지)
IN_FLIGHT_PROCESSING_STATUSES = frozenset(
    {ProcessingStatus.QUEUED, ProcessingStatus.PROCESSING, ProcessingStatus.FULFILLED}
)


class ProcessingMode(str, enum.Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"
    AUTO_DRY_RUN = "AUTO_DRY_RUN"


class AutoFulfillmentMode(str, enum.Enum):
    MANUAL_ONLY = "MANUAL_ONLY"
    AUTO_WITH_REVIEW_BAND = "AUTO_WITH_REVIEW_BAND"
    AUTO_STRICT = "AUTO_STRICT"


class AmazonOrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    PLACED = "PLACED"


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(enum_cls, native_enum=False, length=32, validate_strings=True)


# --------------------------------------------------------------------------
# Shop Domain (API 계층 소유, 워커는 읽기 위주)
# --------------------------------------------------------------------------

class Shop(Base):
    __tablename__ = "shops"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    shopee_shop_id: Mapped[str] = mapped_column(Text, nullable=False)  # Shopee 측 shop_id
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    setting: Mapped["AutoShippingSetting | None"] = relationship(back_populates="shop", uselist=False)
    shopee_credential: Mapped["ShopeeCredential | None"] = relationship(back_populates="shop", uselist=False)
    amazon_credential: Mapped["AmazonCredential | None"] = relationship(back_populates="shop", uselist=False)
    mappings: Mapped[list["ProductMapping"]] = relationship(back_populates="shop")


class AutoShippingSetting(Base):
    """
    샵별 자동 구매 설정.
    워커가 직접 수정하는 필드는 last_shopee_polled_at 뿐입니다.
    """
    __tablename__ = "auto_shipping_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shops.id"), nullable=False, unique=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    is_dry_run: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_fulfillment_mode: Mapped[AutoFulfillmentMode] = mapped_column(
        _enum(AutoFulfillmentMode), default=AutoFulfillmentMode.MANUAL_ONLY
    )

    # 가드레일
    min_expected_profit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    max_shipping_days: Mapped[int] = mapped_column(Integer, default=7)
    review_band_percent: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)

    # 수익 계산 옵션
    include_points: Mapped[bool] = mapped_column(Boolean, default=False)
    include_domestic_shipping: Mapped[bool] = mapped_column(Boolean, default=False)
    domestic_shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    default_shipping_address_label: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_shopee_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    shop: Mapped[Shop] = relationship(back_populates="setting")


class ShopeeCredential(Base):
    __tablename__ = "shopee_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shops.id"), nullable=False, unique=True)
    partner_id: Mapped[str] = mapped_column(Text, nullable=False)
    partner_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    partner_key_iv: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    access_token_iv: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_validation_status: Mapped[str | None] = mapped_column(Text, nullable=True)  # healthy, failed
    last_validation_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    shop: Mapped[Shop] = relationship(back_populates="shopee_credential")


class AmazonCredential(Base):
    __tablename__ = "amazon_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shops.id"), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    password_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    encryption_iv: Mapped[str] = mapped_column(Text, nullable=False)

    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_validation_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_validation_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    shop: Mapped[Shop] = relationship(back_populates="amazon_credential")


class ProductMapping(Base):
    """Shopee 상품 ID ↔ Amazon 상품 URL 매핑 (워커 입장에서는 읽기 전용)"""
    __tablename__ = "product_mappings"
    __table_args__ = (UniqueConstraint("shop_id", "shopee_item_id", name="uq_product_mappings_shop_item"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shops.id"), nullable=False)
    shopee_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    amazon_product_url: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    shop: Mapped[Shop] = relationship(back_populates="mappings")


# --------------------------------------------------------------------------
# Order Domain (워커가 생성/갱신)
# --------------------------------------------------------------------------

class ShopeeOrder(Base):
    __tablename__ = "shopee_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shops.id"), nullable=False)
    shopee_order_sn: Mapped[str] = mapped_column(Text, nullable=False, unique=True)  # Marketplace native ID
    shopee_status: Mapped[ShopeeStatus] = mapped_column(_enum(ShopeeStatus), default=ShopeeStatus.UNPAID)

    order_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    shipping_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    currency: Mapped[str] = mapped_column(Text, default="JPY")
    buyer_address_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # 원본 페이로드와 해석된 구매 대상 URL을 분리 보관
    raw_payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    amazon_product_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    processing_status: Mapped[ProcessingStatus] = mapped_column(
        _enum(ProcessingStatus), default=ProcessingStatus.UNPROCESSED
    )
    processing_mode: Mapped[ProcessingMode | None] = mapped_column(_enum(ProcessingMode), nullable=True)

    # 마지막 수익/배송 스냅샷
    expected_profit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    expected_profit_currency: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipping_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_include_points: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    used_include_domestic_shipping: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    last_processing_error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_processing_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    amazon_order: Mapped["AmazonOrder | None"] = relationship(back_populates="shopee_order", uselist=False)


class AmazonOrder(Base):
    """구매 시도 기록 (Target Order). 드라이런은 amazon_order_id가 항상 NULL."""
    __tablename__ = "amazon_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shopee_order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shopee_orders.id"), nullable=False, unique=True)
    amazon_order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AmazonOrderStatus] = mapped_column(_enum(AmazonOrderStatus), default=AmazonOrderStatus.CREATED)
    product_url: Mapped[str] = mapped_column(Text, nullable=False)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    currency: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipping_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    points_used: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    shopee_order: Mapped[ShopeeOrder] = relationship(back_populates="amazon_order")


class ErrorItem(Base):
    """처리 실패/필터 탈락 기록. 생성 후 수정하지 않습니다 (append-only)."""
    __tablename__ = "error_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shopee_order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("shopee_orders.id"), nullable=True)
    shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shops.id"), nullable=False)
    amazon_product_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    filter_failure_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    profit_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    shipping_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)  # screenshot 경로 등
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shopee_order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("shopee_orders.id"), nullable=False)
    from_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_status: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)  # process-order, poll-shop, retry:UI
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# --------------------------------------------------------------------------
# Job Queue (워커 소유)
# --------------------------------------------------------------------------

class WorkerJob(Base):
    __tablename__ = "worker_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)  # process-order, poll-shop, ...
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    job_key: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)  # 중복 등록 방지용
    repeat_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="waiting")  # waiting, active, completed, failed
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    remove_on_complete: Mapped[bool] = mapped_column(Boolean, default=True)
    remove_on_fail: Mapped[bool] = mapped_column(Boolean, default=False)

    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RepeatableJob(Base):
    __tablename__ = "worker_repeatable_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)  # {name}:{job_id}:{every_ms}
    name: Mapped[str] = mapped_column(Text, nullable=False)
    job_id: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    every_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
