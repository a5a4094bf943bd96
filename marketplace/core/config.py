import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Dict, Optional


def _default_tier_limits() -> Dict[str, int]:
    return {"free": 1000, "pro": 10000, "enterprise": 100000}


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Shared counter store (rate limiter + usage meter).
    # Unset means the in-process store: single instance only.
    REDIS_URL: Optional[str] = None
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 0.5

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30
    RATE_LIMIT_BUCKET_TTL_SECONDS: int = 3600

    # Entitlement quota
    QUOTA_WARNING_THRESHOLD: float = 0.8  # fraction of quota used
    ALLOW_QUOTA_LIMIT_BELOW_USAGE: bool = True

    # Usage meter
    METER_TIER_LIMITS: Dict[str, int] = _default_tier_limits()
    METER_HISTORY_MAX_ENTRIES: int = 1000

    # Auth
    JWT_SECRET: Optional[str] = None
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("marketplace")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not getattr(cfg, "REDIS_URL", None):
        log.warning(
            "REDIS_URL not set: rate limits and usage meters are process-local; "
            "multi-instance deployments will under-enforce them"
        )

    threshold = getattr(cfg, "QUOTA_WARNING_THRESHOLD", 0.8)
    if not 0 < threshold <= 1:
        message = f"QUOTA_WARNING_THRESHOLD must be in (0, 1], got {threshold}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
