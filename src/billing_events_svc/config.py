from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide configuration, read from the environment (or a .env file) once at startup.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./billing.db"
    log_level: str = "INFO"

    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_timeout_seconds: float = 10.0
    webhook_tolerance_seconds: int = 300

    site_url: str = "https://app.cybercorrect.com"

    stripe_price_starter_monthly: str = ""
    stripe_price_starter_annual: str = ""
    stripe_price_professional_monthly: str = ""
    stripe_price_professional_annual: str = ""
    stripe_price_enterprise_monthly: str = ""
    stripe_price_enterprise_annual: str = ""

    trial_period_days: int = 14
    past_due_grace_days: int = 7
    event_ledger_enabled: bool = True
    record_failed_invoices: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
