import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"  # development | test | production
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Session tokens (issued by the auth service, verified here)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"

    # Midtrans Snap
    MIDTRANS_SERVER_KEY: Optional[str] = None
    MIDTRANS_CLIENT_KEY: Optional[str] = None
    MIDTRANS_IS_PRODUCTION: bool = False
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # App URLs
    APP_URL: str = "http://localhost:8000"

    # Ledger listing
    TRANSACTIONS_PAGE_LIMIT: int = 20
    TRANSACTIONS_MAX_LIMIT: int = 100

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def is_production(settings_obj: Optional[Settings] = None) -> bool:
    cfg = settings_obj or settings
    return (cfg.ENV or "").lower() == "production"


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("melodia")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "MIDTRANS_SERVER_KEY",
        "MIDTRANS_CLIENT_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
