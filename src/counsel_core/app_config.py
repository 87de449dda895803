from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass
class RuntimeEnv:
    paystack_secret_key: str | None
    paystack_public_key: str | None


@dataclass
class AppConfig:
    database_path: str
    session_price_kobo: int
    commission_percentage: int
    banner_duration_ms: int
    notification_fetch_limit: int
    max_message_length: int
    notification_preview_chars: int
    checkout_mode: str
    paystack_base_url: str
    paystack_callback_url: str | None
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        database_path=str(config.get("DatabasePath", ".counsel/core.db")),
        session_price_kobo=int(config.get("SessionPriceKobo", 500_000)),
        commission_percentage=int(config.get("CommissionPercentage", 20)),
        banner_duration_ms=int(config.get("BannerDurationMs", 4000)),
        notification_fetch_limit=int(config.get("NotificationFetchLimit", 50)),
        max_message_length=int(config.get("MaxMessageLength", 1000)),
        notification_preview_chars=int(config.get("NotificationPreviewChars", 50)),
        checkout_mode=str(config.get("CheckoutMode", "manual")).strip().lower(),
        paystack_base_url=str(config.get("PaystackBaseUrl", "https://api.paystack.co")).rstrip("/"),
        paystack_callback_url=str(config.get("PaystackCallbackUrl", "")).strip() or None,
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(*, load_env_file: bool = True) -> RuntimeEnv:
    if load_env_file:
        load_dotenv()
    return RuntimeEnv(
        paystack_secret_key=os.environ.get("PAYSTACK_SECRET_KEY"),
        paystack_public_key=os.environ.get("PAYSTACK_PUBLIC_KEY"),
    )
