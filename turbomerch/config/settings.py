"""
Service settings read from the environment
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

from turbomerch.models.user import SubscriptionTier


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _price_ids() -> Dict[str, str]:
    """Stripe price id -> tier name, from STRIPE_PRICE_<TIER>"""
    mapping = {}
    for tier in SubscriptionTier:
        price_id = os.getenv(f"STRIPE_PRICE_{tier.name}")
        if price_id:
            mapping[price_id] = tier.value
    return mapping


@dataclass(frozen=True)
class Settings:
    database_url: str
    debug: bool = False
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_tiers: Dict[str, str] = field(default_factory=dict)
    auth_jwt_secret: Optional[str] = None
    auth_jwt_algorithm: str = "HS256"
    tier_config_path: Optional[str] = None
    usage_max_attempts: int = 3
    usage_retry_backoff_seconds: float = 0.05


@lru_cache
def get_settings() -> Settings:
    """Settings for this process (read once)"""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "postgresql+asyncpg://localhost:5432/turbomerch_db"),
        debug=_env_bool("DEBUG"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        stripe_price_tiers=_price_ids(),
        auth_jwt_secret=os.getenv("AUTH_JWT_SECRET"),
        auth_jwt_algorithm=os.getenv("AUTH_JWT_ALGORITHM", "HS256"),
        tier_config_path=os.getenv("TIER_CONFIG_PATH"),
        usage_max_attempts=int(os.getenv("USAGE_MAX_ATTEMPTS", "3")),
        usage_retry_backoff_seconds=float(os.getenv("USAGE_RETRY_BACKOFF_SECONDS", "0.05")),
    )
