"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Public origin of the webhook service; notify URLs are built from it.
    public_base_url: str = "http://localhost:8000"
    request_id_header: str = "X-Request-ID"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # TELEGRAM BOT
    # ===========================================
    telegram_bot_token: str  # Required, no default
    # Bot username without @, used for subscribe deep links.
    telegram_bot_username: str = ""

    # ===========================================
    # PAYFAST (deployment-wide defaults, groups may override)
    # ===========================================
    payfast_merchant_id: str = ""
    payfast_merchant_key: str = ""
    payfast_passphrase: str = ""
    payfast_sandbox: bool = True
    payfast_validate_with_server: bool = True
    payfast_return_url: str = ""
    payfast_cancel_url: str = ""
    payfast_timeout: float = 15.0

    # ===========================================
    # SUBSCRIPTIONS
    # ===========================================
    default_currency: str = "ZAR"
    subscription_duration_days: int = 30
    admin_subscription_days: int = 365
    default_grace_period_hours: int = 24
    grace_period_hours_max: int = 168
    default_trial_days: int = 7
    subscription_prompt_interval_seconds: int = 3600
    trial_days_min: int = 1
    trial_days_max: int = 30

    # ===========================================
    # BACKGROUND SWEEPS
    # ===========================================
    expiry_sweep_interval_seconds: int = 86400
    auto_removal_interval_seconds: int = 3600

    # ===========================================
    # CONVERSATION STATE
    # ===========================================
    conversation_state_ttl: int = 3600
    state_secret: str  # Required, no default

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_fail_max: int = 5
    cb_open_seconds: int = 60

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str = ""
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        code = (v or "").strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("default_currency must be a 3-letter ISO code")
        return code

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return (v or "").rstrip("/")


settings = Settings()
