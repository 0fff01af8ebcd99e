from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    migrate_on_start: bool = Field(False, alias="MIGRATE_ON_START")

    database_url: str = Field("postgresql+psycopg2://postgres@localhost:5432/review", alias="DATABASE_URL")
    db_pool_size: int = Field(10, alias="DB_POOL_SIZE")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Upstream log (Kafka)
    kafka_bootstrap_servers: str | None = Field(None, alias="KAFKA_BOOTSTRAP_SERVERS")
    kafka_consumer_group: str = Field("cluster-review", alias="KAFKA_CONSUMER_GROUP")
    kafka_client_id: str = Field("cluster-review", alias="KAFKA_CLIENT_ID")
    kafka_poll_timeout_ms: int = Field(1000, alias="KAFKA_POLL_TIMEOUT_MS")
    kafka_max_partition_fetch_bytes: int = Field(10_000_000, alias="KAFKA_MAX_PARTITION_FETCH_BYTES")

    # Correlation backfill
    backfill_interval_seconds: int = Field(900, alias="BACKFILL_INTERVAL_SECONDS")
    backfill_max_messages: int = Field(1000, alias="BACKFILL_MAX_MESSAGES")
    max_event_id_num: int = Field(25, alias="MAX_EVENT_ID_NUM")

    # Benign-signature notification (etcd v3 JSON gateway)
    etcd_addr: str | None = Field(None, alias="ETCD_ADDR")
    etcd_timeout_seconds: float = Field(3.0, alias="ETCD_TIMEOUT_SECONDS")
    public_addr: str = Field("localhost:8080", alias="PUBLIC_ADDR")

    # Query DSL limits
    query_default_per_page: int = Field(10, alias="QUERY_DEFAULT_PER_PAGE")
    query_max_per_page: int = Field(100, alias="QUERY_MAX_PER_PAGE")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_bootstrap_servers(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [h.strip() for h in raw.split(",") if h.strip()]
