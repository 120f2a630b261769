"""
Runtime configuration

Values come from the environment; the parsed config is cached per process and
handed to routes through the `get_config` dependency so tests can override it.
"""
import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class AppConfig(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "storefront"
    mongo_transactions: bool = False
    log_level: str = "INFO"

    base_url: str = "http://localhost:3000"
    tracking_base_url: Optional[str] = None
    store_name: str = "MS Foods"

    # outbound notifications
    resend_api_key: Optional[str] = None
    email_from: str = "MS Foods <contact@msfoods.pk>"
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    whatsapp_status_updates: bool = False

    # PayFast redirect + notify
    payfast_url: Optional[str] = None
    payfast_merchant_id: Optional[str] = None
    payfast_merchant_key: Optional[str] = None
    payfast_passphrase: Optional[str] = None
    payfast_return_url: Optional[str] = None
    payfast_cancel_url: Optional[str] = None
    payfast_notify_url: Optional[str] = None

    # GoPayFast web checkout
    gopayfast_base_url: Optional[str] = None
    gopayfast_merchant_id: Optional[str] = None
    gopayfast_secured_key: Optional[str] = None

    upload_dir: str = "uploads"
    upload_base_url: str = "/uploads"
    http_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", "storefront"),
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            base_url=os.getenv("BASE_URL", "http://localhost:3000"),
            tracking_base_url=os.getenv("TRACKING_BASE_URL"),
            store_name=os.getenv("STORE_NAME", "MS Foods"),
            resend_api_key=os.getenv("RESEND_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", "MS Foods <contact@msfoods.pk>"),
            whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN"),
            whatsapp_status_updates=_env_bool("WHATSAPP_STATUS_UPDATES"),
            payfast_url=os.getenv("PAYFAST_URL"),
            payfast_merchant_id=os.getenv("PAYFAST_MERCHANT_ID"),
            payfast_merchant_key=os.getenv("PAYFAST_MERCHANT_KEY"),
            payfast_passphrase=os.getenv("PAYFAST_PASSPHRASE") or None,
            payfast_return_url=os.getenv("PAYFAST_RETURN_URL"),
            payfast_cancel_url=os.getenv("PAYFAST_CANCEL_URL"),
            payfast_notify_url=os.getenv("PAYFAST_NOTIFY_URL"),
            gopayfast_base_url=os.getenv("GOPAYFAST_BASE_URL"),
            gopayfast_merchant_id=os.getenv("GOPAYFAST_MERCHANT_ID"),
            gopayfast_secured_key=os.getenv("GOPAYFAST_SECURED_KEY"),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            upload_base_url=os.getenv("UPLOAD_BASE_URL", "/uploads"),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "10")),
        )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return AppConfig.from_env()
