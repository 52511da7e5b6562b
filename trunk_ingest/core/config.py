from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "trunk-ingest"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    storage_retry_attempts: int = 4
    storage_retry_base_seconds: float = 0.2
    storage_retry_max_seconds: float = 5.0
    storage_pause_base_seconds: float = 1.0
    storage_pause_max_seconds: float = 30.0
    deferred_retry_base_seconds: float = 0.5
    deferred_retry_max_seconds: float = 30.0
    deferred_max_attempts: int = 8
    deferred_capacity: int = 10_000
    worker_count: int = 8
    worker_queue_size: int = 100
    drain_timeout_seconds: float = 30.0
    dedup_cache_size: int = 50_000
    committed_calls_cache_size: int = 10_000
    dedup_hash_key: str = ""
    dead_letter_spool_path: Path | None = Path("var/dead_letters.jsonl")
    otel_enabled: bool = True
    otel_service_name: str = "trunk-ingest"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="TI_", extra="ignore")

    @field_validator("dedup_hash_key")
    @classmethod
    def validate_dedup_hash_key(cls, value: str) -> str:
        # BLAKE2b keys are capped at 64 bytes.
        if len(value.encode("utf-8")) > 64:
            raise ValueError("dedup_hash_key must be at most 64 bytes")
        return value

    @property
    def dedup_hash_key_bytes(self) -> bytes:
        return self.dedup_hash_key.encode("utf-8")


@lru_cache
def get_settings() -> Settings:
    return Settings()
