"""Application settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables with LEORNIAN_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="LEORNIAN_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Core ---
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8081"]
    trusted_proxies: list[str] = []
    request_timeout_seconds: float = 60.0
    shutdown_grace_period_seconds: int = 10
    log_level: str = "INFO"
    log_format: str = "json"

    # --- Database ---
    database_url: str = ""
    db_min_connections: int = 5
    db_max_connections: int = 30
    db_max_conn_lifetime_seconds: int = 3600
    db_connect_timeout_seconds: int = 10

    # --- Redis (global rate limiter, readiness) ---
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_requests: int = 300
    rate_limit_window_seconds: int = 60

    # --- JWT ---
    jwt_secret: str = ""
    jwt_issuer: str = "leornian-auth-service"
    jwt_audience: str = "leornian-api"
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 7 * 24 * 3600

    # --- Password ---
    password_min_length: int = 8
    password_max_length: int = 128

    # --- Auth rate limits (sliding windows) ---
    login_rate_limit: int = 5
    login_rate_window_seconds: int = 15 * 60
    register_rate_limit: int = 3
    register_rate_window_seconds: int = 3600
    password_reset_rate_limit: int = 3
    password_reset_rate_window_seconds: int = 3600
    refresh_rate_limit: int = 10
    refresh_rate_window_seconds: int = 60
    verification_rate_limit: int = 3
    verification_rate_window_seconds: int = 3600

    # --- Email tokens ---
    email_verification_token_ttl_hours: int = 24
    password_reset_token_ttl_minutes: int = 60
    frontend_base_url: str = "http://localhost:3000"
    mobile_verification_url: str = ""

    # --- Email service ---
    email_provider: str = "resend"
    email_from_address: str = "noreply@leornian.app"
    email_from_name: str = "Leornian"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    resend_api_key: str = ""

    # --- OAuth ---
    oauth_state_ttl_seconds: int = 600
    oauth_http_timeout_seconds: float = 30.0
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    google_mobile_client_id: str = ""
    google_mobile_client_secret: str = ""
    google_mobile_redirect_uri: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    github_redirect_uri: str = ""
    github_mobile_client_id: str = ""
    github_mobile_client_secret: str = ""
    github_mobile_redirect_uri: str = ""

    # --- WebSocket ---
    ws_mailbox_size: int = 256
    ws_send_queue_size: int = 64
    ws_ping_interval_seconds: float = 30.0
    ws_ping_timeout_seconds: float = 60.0

    # --- Messaging ---
    message_max_length: int = 5000

    # --- Maintenance ---
    credential_sweep_interval_seconds: int = 3600


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
