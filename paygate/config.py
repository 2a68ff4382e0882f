"""Application configuration via environment variables."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./paygate.db"
    log_level: str = "INFO"
    public_base_url: str = "http://localhost:8000"

    http_timeout_seconds: float = 10.0
    token_safety_margin_seconds: int = 300  # never serve a token this close to expiry
    webhook_tolerance_seconds: int = 300

    recovery_enabled: bool = True
    recovery_threshold_minutes: int = 60
    recovery_interval_seconds: int = 900
    recovery_batch_size: int = 100
    recovery_template: str = "payment_reminder"

    # Fallback rate table, in units of each currency per 1 USD
    rates_from_usd: dict[str, Decimal] = {
        "USD": Decimal("1"),
        "NPR": Decimal("133"),
        "INR": Decimal("83"),
        "EUR": Decimal("0.92"),
        "GBP": Decimal("0.79"),
    }

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "PAYGATE_"}


settings = Settings()
