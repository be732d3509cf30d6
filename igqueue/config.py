from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./igqueue.db"
    environment: str = "local"
    log_level: str = "INFO"

    # Store call bounds (Postgres connect / per-statement / pool checkout)
    db_connect_timeout_seconds: int = 10
    db_statement_timeout_ms: int = 30000
    db_pool_timeout_seconds: int = 30

    # Graph API
    graph_api_base: str = "https://graph.facebook.com/v23.0"
    graph_timeout_seconds: float = 15.0
    graph_reply_timeout_seconds: float = 10.0

    # Retry policy
    max_attempts: int = 5
    backoff_base_seconds: int = 60
    backoff_cap_seconds: int = 3600
    rate_limit_default_cooldown_seconds: int = 3600

    # Background sweep (POST_FALLBACK_ENABLED=true to turn on)
    post_fallback_enabled: bool = False
    sweep_interval_minutes: int = 5
    sweep_batch_size: int = 20
    # pending rows untouched for this long are treated as orphaned attempts
    pending_grace_seconds: int = 600

    # X-API-Key guard for the HTTP surface; unset disables the check
    agent_api_key: str | None = None

def get_settings() -> Settings:
    return Settings()
