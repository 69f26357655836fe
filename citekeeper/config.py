"""Citekeeper configuration: loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "CITEKEEPER_", "env_file": ".env"}

    # Knowledge-search oracle (Perplexity)
    perplexity_api_key: str = ""
    oracle_url: str = "https://api.perplexity.ai/chat/completions"
    oracle_model: str = "sonar-pro"
    oracle_timeout: float = 60.0

    # Database
    database_path: str = "citekeeper.db"

    # Health probing
    probe_deadline_seconds: float = 75.0
    probe_slow_threshold_ms: int = 5000
    probe_max_retries: int = 2
    probe_backoff_seconds: float = 2.0
    probe_concurrency: int = 10

    # Replacement jobs
    chunk_size: int = 25
    heartbeat_interval_seconds: float = 30.0
    chunk_stale_after_seconds: float = 300.0
    auto_approve_threshold: float = 8.0

    # Revisions
    rollback_window_hours: int = 24

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:5173"]
    log_level: str = "INFO"


settings = Settings()
