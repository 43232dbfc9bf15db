from __future__ import annotations

from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    meilisearch_host: str = Field(default="http://localhost:7700", alias="MEILISEARCH_HOST")
    meilisearch_api_key: str | None = Field(default=None, alias="MEILISEARCH_API_KEY")
    index_env: str = Field(default="development", alias="INDEX_ENV")

    data_dir: Path = Field(default=Path("data"), alias="DATA_DIR")

    pg_dsn: str | None = Field(default=None, alias="PG_DSN")
    postgres_host: str | None = Field(default=None, alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_db: str | None = Field(default=None, alias="POSTGRES_DB")
    postgres_user: str | None = Field(default=None, alias="POSTGRES_USER")
    postgres_password: SecretStr | None = Field(default=None, alias="POSTGRES_PASSWORD")
    postgres_schema: str = Field(default="public", alias="POSTGRES_SCHEMA")

    nats_url: str | None = Field(default=None, alias="NATS_URL")
    cache_invalidation_subject: str = Field(default="archive.index.swapped", alias="CACHE_INVALIDATION_SUBJECT")

    source_id_prefix: str = Field(default="DE-1958_", alias="SOURCE_ID_PREFIX")
    file_slice_size: int = Field(default=1000, gt=0, alias="FILE_SLICE_SIZE")
    flush_threshold: int = Field(default=5000, gt=0, alias="FLUSH_THRESHOLD")
    upsert_batch_size: int = Field(default=5000, gt=0, alias="UPSERT_BATCH_SIZE")

    swap_poll_interval_s: float = Field(default=5.0, gt=0, alias="SWAP_POLL_INTERVAL_S")
    swap_timeout_s: float = Field(default=3600.0, gt=0, alias="SWAP_TIMEOUT_S")
    task_timeout_s: float = Field(default=600.0, gt=0, alias="TASK_TIMEOUT_S")
    http_timeout_s: float = Field(default=120.0, gt=0, alias="HTTP_TIMEOUT_S")
    http_max_retries: int = Field(default=5, ge=0, alias="HTTP_MAX_RETRIES")
    http_retry_backoff_s: float = Field(default=1.0, ge=0, alias="HTTP_RETRY_BACKOFF_S")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")


def load_settings() -> Settings:
    return Settings()
