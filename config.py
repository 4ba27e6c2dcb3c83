import logging
import os
import secrets
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_secs: int,
        password_rounds: int,
        cors_origins: list[str],
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.password_rounds = password_rounds
        self.cors_origins = cors_origins
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        data_dir = _ensure_data_dir()
        database_url = f"sqlite:///{data_dir / 'finance.db'}"
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Belgrade")
    token_secret = os.getenv("FINANCE_TOKEN_SECRET")
    if not token_secret:
        # tokens do not survive a restart without a configured secret
        logger.warning("token_secret_missing: using a per-process random secret")
        token_secret = secrets.token_urlsafe(32)
    token_max_age_secs = int(os.getenv("FINANCE_TOKEN_MAX_AGE_SECS", str(7 * 86400)))
    password_rounds = int(os.getenv("FINANCE_PASSWORD_ROUNDS", "12"))
    cors_origins = _split_origins(
        os.getenv(
            "FINANCE_CORS_ORIGINS", "http://localhost:3001,http://localhost:5173"
        )
    )
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        password_rounds=password_rounds,
        cors_origins=cors_origins,
        log_level=log_level,
    )
