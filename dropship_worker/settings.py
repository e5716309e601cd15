import re

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "postgresql+psycopg://dropship@localhost:5432/dropship"

    # 자격증명 복호화 키 (AES-256-GCM, hex 64자리)
    aes_secret_key: str = ""
    alert_webhook_url: str = ""

    # Shopee OpenAPI v2
    shopee_base_url: str = "https://partner.shopeemobile.com"
    shopee_requests_per_second: float = 1.0  # 파트너 API 호출 한도
    shopee_timeout_seconds: float = 30.0
    shopee_poll_fallback_seconds: int = 600  # 최초 폴링 시 조회 구간
    shopee_page_size: int = 50
    shopee_max_pages: int = 20

    # Amazon
    amazon_base_url: str = "https://www.amazon.co.jp"
    amazon_shipping_label: str = "Shopee Warehouse"
    default_currency: str = "JPY"

    # 작업 큐 / 워커
    worker_concurrency: int = 2  # 동시 브라우저 페이지 수 상한
    job_attempts: int = 3
    job_backoff_seconds: float = 5.0
    poll_interval_seconds: int = 60
    worker_idle_sleep_seconds: float = 1.0
    job_stall_timeout_seconds: int = 1800

    # 브라우저 자동화
    browser_headless: bool = True
    browser_session_idle_seconds: int = 600
    browser_session_dir: str = "var/browser_sessions"
    screenshot_dir: str = "tmp"
    browser_navigation_timeout_ms: int = 30000
    browser_action_timeout_ms: int = 8000

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("shopee_base_url", "amazon_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v.rstrip("/")

    @field_validator("alert_webhook_url")
    @classmethod
    def validate_optional_http_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v

    @field_validator("aes_secret_key")
    @classmethod
    def validate_aes_key(cls, v: str) -> str:
        v = v.strip()
        if v and not re.fullmatch(r"[0-9a-fA-F]{64}", v):
            raise ValueError("AES 키는 64자리 hex 문자열(32바이트)이어야 합니다.")
        return v

    @field_validator("worker_concurrency", "job_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("1 이상이어야 합니다.")
        return v

    @field_validator("shopee_requests_per_second", "job_backoff_seconds", "worker_idle_sleep_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("0 이상이어야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
