from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "cashmatch-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "CashMatch")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/cashmatch_dev")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    cron_secret: str = os.getenv("CRON_SECRET", "")

    # Auth
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    access_ttl_min: int = int(os.getenv("ACCESS_TTL_MIN", "15"))
    refresh_ttl_min: int = int(os.getenv("REFRESH_TTL_MIN", "10080"))  # 7d

    # Stripe configuration
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    provider_timeout_seconds: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))
    payout_retry_after_seconds: int = int(os.getenv("PAYOUT_RETRY_AFTER_SECONDS", "300"))

    # Settlement
    settlement_lock_ttl_seconds: int = int(os.getenv("SETTLEMENT_LOCK_TTL_SECONDS", "120"))
    settlement_backoff_seconds: int = int(os.getenv("SETTLEMENT_BACKOFF_SECONDS", "60"))
    settlement_max_attempts: int = int(os.getenv("SETTLEMENT_MAX_ATTEMPTS", "5"))
    settlement_batch_size: int = int(os.getenv("SETTLEMENT_BATCH_SIZE", "50"))
    default_rake_percent: float = float(os.getenv("DEFAULT_RAKE_PERCENT", "5.0"))

    # Withdrawal gate
    withdrawal_review_cents: int = int(os.getenv("WITHDRAWAL_REVIEW_CENTS", "100000"))  # $1,000
    fraud_block_score: int = int(os.getenv("FRAUD_BLOCK_SCORE", "70"))
    fraud_review_score: int = int(os.getenv("FRAUD_REVIEW_SCORE", "50"))
    min_account_age_days: int = int(os.getenv("MIN_ACCOUNT_AGE_DAYS", "30"))
    withdrawal_cooldown_hours: int = int(os.getenv("WITHDRAWAL_COOLDOWN_HOURS", "24"))
    withdrawal_rate_window_hours: int = int(os.getenv("WITHDRAWAL_RATE_WINDOW_HOURS", "24"))
    max_withdrawals_per_window: int = int(os.getenv("MAX_WITHDRAWALS_PER_WINDOW", "1"))
    max_withdrawal_per_day_cents: int = int(os.getenv("MAX_WITHDRAWAL_PER_DAY_CENTS", "500000"))

    # Deposits
    min_deposit_cents: int = int(os.getenv("MIN_DEPOSIT_CENTS", "500"))
    max_deposit_cents: int = int(os.getenv("MAX_DEPOSIT_CENTS", "100000"))
    max_deposits_per_hour: int = int(os.getenv("MAX_DEPOSITS_PER_HOUR", "5"))

settings = Settings()
