import os
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return v.strip().lower() in {"1", "true", "yes", "on"}
    except Exception:
        return default


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./data/subsentry.db"
    # dev | staging | prod | test
    ENV: str = os.getenv("ENV", os.getenv("APP_ENV", "dev"))
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = _env_bool("LOG_JSON", True)

    # --- Reconciliation thresholds ---
    FUZZY_MATCH_THRESHOLD: float = 0.85
    AUTO_ACTIVATE_CONFIDENCE: float = 0.85
    REVIEW_CONFIDENCE_FLOOR: float = 0.60

    # --- Alerting ---
    ALERT_SEND_HOUR: int = 9  # local hour in the user's timezone
    UNUSED_AFTER_MONTHS: int = 6
    UNUSED_REALERT_DAYS: int = 30
    SNOOZE_HOURS_DEFAULT: int = 24
    RENEWAL_WINDOW_MODE: str = "exact"  # "exact" | "catch_up"

    # --- Jobs ---
    WORKER_POOL_SIZE: int = 4
    OVERDUE_RENEWAL_DAYS: int = 7

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

if settings.RENEWAL_WINDOW_MODE not in ("exact", "catch_up"):
    # Unknown values fall back to the conservative behaviour
    settings.RENEWAL_WINDOW_MODE = "exact"
