"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Infrastructure URLs have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # RAZORPAY (Gateway: razorpay)
    # ===========================================
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    razorpay_timeout: float = 10.0

    # ===========================================
    # STRIPE (Gateway: stripe)
    # ===========================================
    stripe_secret_key: str = ""
    stripe_timeout: float = 10.0
    # card authorizations lapse after this many days unless captured
    stripe_authorization_window_days: int = 7

    # ===========================================
    # GATEWAY CALLS - RETRY & CIRCUIT BREAKER
    # ===========================================
    gateway_retry_max_attempts: int = 3
    gateway_retry_backoff_seconds: float = 1.0
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis, memory

    # ===========================================
    # ESCROW POLICY
    # ===========================================
    escrow_default_currency: str = "INR"
    escrow_hold_period_days: int = 7
    # Decimal strings: 0.025 = 2.5%
    escrow_platform_fee_rate: str = "0.025"
    escrow_gateway_fee_rate: str = "0.010"
    escrow_method_surcharge_rates: str = (
        '{"card": "0.019", "netbanking": "0.009", "upi": "0.005", '
        '"wallet": "0.010", "bank_transfer": "0.000"}'
    )
    escrow_state_cas_retries: int = 3

    # ===========================================
    # AUTO-RELEASE SWEEP
    # ===========================================
    auto_release_interval_minutes: int = 5
    auto_release_batch_size: int = 200
    auto_release_lock_ttl_seconds: int = 240

    # ===========================================
    # SUBSCRIPTIONS
    # ===========================================
    subscription_period_days: int = 30
    subscription_expiry_interval_minutes: int = 30

    # ===========================================
    # NOTIFICATIONS (external worker consumes the queue)
    # ===========================================
    notification_task_name: str = "notifications.deliver"
    notification_queue: str = "notifications"

    # ===========================================
    # COLLABORATORS (dotted paths, "module:Class"; used by workers)
    # ===========================================
    listing_service_path: str = ""
    user_directory_path: str = ""

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("escrow_default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("cb_storage")
    @classmethod
    def validate_cb_storage(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in ("redis", "memory"):
            raise ValueError("cb_storage must be 'redis' or 'memory'")
        return value

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
