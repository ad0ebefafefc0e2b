"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./bizzybee.db"

    # Managed Postgres: force TLS for the async driver, optionally against a CA bundle
    # (relative paths resolve against backend/). Set the pooler flag behind PgBouncer
    # or Supavisor in transaction mode, which cannot keep prepared statements.
    database_require_ssl: bool = False
    database_ssl_ca_file: Optional[str] = None
    database_transaction_pooler: bool = False

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # LLM gateway - any OpenAI-compatible endpoint
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.2

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (Celery broker/results and webhook rate limiting)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Shared secret for pipeline trigger endpoints (X-Worker-Token header)
    worker_token: str = ""
    log_level: str = "INFO"

    # Aurinko mailbox provider
    aurinko_api_base_url: str = "https://api.aurinko.io"
    aurinko_timeout_s: float = 30.0
    aurinko_webhook_secret: str = ""

    # Relay time budget: work stops at this many seconds of a ~60s ceiling
    relay_time_budget_s: float = 50.0
    # Leave at least this much budget after an in-process backoff sleep
    relay_safety_margin_s: float = 2.0

    # Batch importer
    import_batch_size: int = 50
    import_max_retries: int = 3
    import_backoff_base_s: float = 1.0
    import_backoff_max_s: float = 30.0
    import_max_stalled_relays: int = 10
    import_lock_ttl_s: int = 120
    import_stale_after_s: int = 300

    # Bulk classifier
    classify_chunk_size: int = 100
    classify_confidence_threshold: float = 0.6
    classify_update_group_size: int = 50
    classify_max_tokens: int = 4000

    # FAQ consolidation
    consolidate_time_budget_s: float = 120.0
    consolidate_filter_chunk: int = 80
    consolidate_dedup_chunk: int = 80
    consolidate_adapt_chunk: int = 25
    consolidate_max_relays: int = 200

    # Work queue consumers
    queue_import_vt_s: int = 180
    queue_classify_vt_s: int = 120
    queue_draft_vt_s: int = 120
    queue_max_attempts: int = 6
    queue_read_batch: int = 10
    queue_import_cap: int = 2500

    # Webhook ingest
    webhook_rate_limit_per_minute: int = 120
    webhook_max_payload_bytes: int = 512 * 1024
    webhook_body_max_chars: int = 10000

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
