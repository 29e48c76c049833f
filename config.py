"""
Runtime configuration

Values come from environment variables. Shipping rules are configuration,
not business logic: FREE_SHIPPING_THRESHOLD and FLAT_SHIPPING_FEE are in
minor currency units.
"""
import logging
import os
import sys
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    free_shipping_threshold: int = Field(250000, ge=0)
    flat_shipping_fee: int = Field(15000, ge=0)
    midtrans_server_key: Optional[str] = None
    admin_token: Optional[str] = None
    order_number_attempts: int = Field(5, ge=1)
    idempotency_ttl_seconds: int = Field(86400, ge=60)
    reject_price_mismatch: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "database_url": os.getenv("DATABASE_URL"),
            "database_name": os.getenv("DATABASE_NAME"),
            "free_shipping_threshold": os.getenv("FREE_SHIPPING_THRESHOLD"),
            "flat_shipping_fee": os.getenv("FLAT_SHIPPING_FEE"),
            "midtrans_server_key": os.getenv("MIDTRANS_SERVER_KEY"),
            "admin_token": os.getenv("ADMIN_TOKEN"),
            "order_number_attempts": os.getenv("ORDER_NUMBER_ATTEMPTS"),
            "idempotency_ttl_seconds": os.getenv("IDEMPOTENCY_TTL_SECONDS"),
            "reject_price_mismatch": os.getenv("REJECT_PRICE_MISMATCH"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        # unset variables fall back to the model defaults
        return cls(**{k: v for k, v in env.items() if v is not None})


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)
    root.setLevel(level.upper())
