from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]  # .../storefront project
load_dotenv(dotenv_path=ROOT_DIR / ".env")


def _get_env(*keys: str, default: str | None = None) -> str | None:
    for k in keys:
        v = os.getenv(k)
        if v is not None and str(v).strip() != "":
            return v.strip()
    return default


def _get_int(*keys: str, default: int | None = None) -> int | None:
    v = _get_env(*keys, default=None)
    if v is None:
        return default
    return int(v)


def _get_float(*keys: str, default: float = 0.0) -> float:
    v = _get_env(*keys, default=None)
    if v is None:
        return default
    return float(v.replace(",", "."))


def _get_path(*keys: str, default: str) -> str:
    v = _get_env(*keys, default=default)
    return str(v)


@dataclass(frozen=True)
class Settings:
    db_path: str
    export_dir: str
    currency: str
    decimals: int
    bot_token: str
    admin_id: int
    jwt_secret: str
    token_ttl_days: int
    shipping_charge: float
    max_qty_per_item: int
    referral_bonus: float
    low_stock_threshold: int
    web_host: str
    web_port: int


settings = Settings(
    db_path=_get_path("DB_PATH", "DATABASE_PATH", default=str(ROOT_DIR / "data" / "shop.db")),
    export_dir=_get_path("EXPORT_DIR", default=str(ROOT_DIR / "exports")),
    currency=_get_env("CURRENCY", default="INR") or "INR",
    decimals=_get_int("DECIMALS", default=2) or 2,
    bot_token=_get_env("BOT_TOKEN", "TELEGRAM_BOT_TOKEN", default="") or "",
    admin_id=_get_int("ADMIN_ID", "ADMIN_TG_ID", default=0) or 0,
    jwt_secret=_get_env("JWT_SECRET", default="dev-secret-change-me") or "dev-secret-change-me",
    token_ttl_days=_get_int("TOKEN_TTL_DAYS", default=7) or 7,
    shipping_charge=_get_float("SHIPPING_CHARGE", default=0.0),
    max_qty_per_item=_get_int("MAX_QTY_PER_ITEM", default=5) or 5,
    referral_bonus=_get_float("REFERRAL_BONUS", default=100.0),
    low_stock_threshold=_get_int("LOW_STOCK_THRESHOLD", default=5) or 5,
    web_host=_get_env("WEB_HOST", "HOST", default="127.0.0.1") or "127.0.0.1",
    web_port=_get_int("WEB_PORT", "PORT", default=8000) or 8000,
)


def require_bot_settings() -> None:
    if not settings.bot_token:
        raise RuntimeError("BOT_TOKEN is empty. Set BOT_TOKEN in .env")
    if not settings.admin_id:
        raise RuntimeError("ADMIN_ID is empty. Set ADMIN_ID (or ADMIN_TG_ID) in .env")
