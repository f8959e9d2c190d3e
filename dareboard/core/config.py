import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity (bearer tokens signed by the identity provider)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256"  # comma-separated

    # Dare lifecycle thresholds (days / counts)
    DARE_EXPIRY_DAYS: int = 3
    DARE_LOW_ENGAGEMENT_DAYS: int = 7
    COMPLETION_LOW_SMILES_DAYS: int = 3
    DARE_MIN_COMPLETIONS: int = 10
    COMPLETION_MIN_SMILES: int = 10

    # A new dare must stay open at least this long
    DARE_MIN_LIFETIME_MINUTES: int = 60

    # Counter writes
    COUNTER_STRATEGY: str = "atomic"  # atomic | optimistic
    COUNTER_MAX_ATTEMPTS: int = 5
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF_MS: int = 50

    # Ranking
    TRENDING_WEIGHT_COMPLETIONS: int = 3
    TRENDING_WEIGHT_SMILES: int = 1
    TRENDING_WEIGHT_COMMENTS: int = 2
    TRENDING_WEIGHT_SHARES: int = 2
    EXPIRING_SOON_HOURS: int = 24

    # Sweep worker
    SWEEP_INTERVAL_SECONDS: int = 3600

    # CORS
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("dareboard")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
