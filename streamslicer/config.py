"""Server configuration using pydantic-settings."""
from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


MB = 1024 * 1024


class Settings(BaseSettings):
    """Server settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server
    app_name: str = "StreamSlicer"
    debug: bool = False
    log_level: str = "INFO"
    secret_key: str = ""  # JWT signing key

    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/auth/google/callback"

    # Ledger backend
    ledger_backend: Literal["memory", "turso", "supabase"] = "memory"
    turso_db_url: str = ""
    turso_auth_token: str = ""
    supabase_url: str = ""
    supabase_service_key: str = ""
    supabase_anon_key: str = ""

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    analysis_temperature: float = 0.4

    # File processing poll (seconds)
    poll_initial_delay: float = 5.0
    poll_interval: float = 5.0
    poll_timeout: float = 600.0

    # Uploads
    max_upload_bytes: int = 1500 * MB
    trial_max_upload_bytes: int = 30 * MB
    upload_dir: Optional[str] = None  # None = system temp dir

    # Pricing (USD per 1M tokens)
    input_price_per_million: float = 0.10
    output_price_per_million: float = 0.40
    markup_multiplier: float = 10.0
    credits_per_usd: int = 1000
    minimum_charge: int = 5  # Credits per analysis, covers fixed overhead
    estimate_tokens_per_second: int = 300
    estimate_completion_tokens: int = 1000

    # Stripe (billing)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Sessions
    allow_anonymous: bool = True
    session_ttl_seconds: int = 3600

    # CORS
    allowed_origins: list[str] = ["http://localhost", "http://localhost:5173"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
