from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"

    database_url: str = "sqlite+aiosqlite:///./checkout.db"
    storage_backend: str = "sql"  # sql | memory

    backend_api_base: str = "http://localhost:5000"
    backend_timeout_seconds: float = 30.0

    # invite-link issuer; provisioning is skipped when unset
    provisioning_api_base: Optional[str] = None
    provisioning_timeout_seconds: float = 15.0

    frontend_return_url: str = "http://localhost:3000/payment/return"

    idempotency_ttl_seconds: float = 300.0
    verification_cache_ttl_seconds: float = 300.0
    idempotency_key_includes_gateway: bool = False

    verify_max_attempts: int = 10
    verify_initial_delay_seconds: float = 2.0
    verify_backoff_factor: float = 1.5
    verify_max_delay_seconds: float = 5.0
    verify_ceiling_seconds: float = 60.0

    signature_poll_interval_seconds: float = 3.0
    signature_wait_ceiling_seconds: float = 120.0
    signature_expire_in_days: int = 7

    default_gateway: str = "razorpay"
    recurring_plan_types: List[str] = ["quarterly", "yearly"]
    require_consent: bool = True
    minimum_age: int = 18
    amount_rounding: str = "ROUND_HALF_UP"
    currency: str = "INR"
    session_ttl_seconds: float = 3600.0

    merchant_name: str = "Portfolio Research"
    razorpay_key_id: str = "rzp_test_key"
    cashfree_mode: str = "sandbox"  # sandbox | production

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
