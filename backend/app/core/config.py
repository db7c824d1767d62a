"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.

Pipeline limits are read once into a frozen PipelineLimits value which the
processing layer receives explicitly; nothing below app/services reads the
global settings object directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # AWS — S3 + Bedrock
    # ------------------------------------------------------------------
    aws_region: str = "us-east-1"

    s3_bucket: str = "legal-audit-jobs"
    storage_backend: str = "s3"   # "s3" | "memory"

    # Local dev: set these; prod: use ECS task role / IRSA (no static keys)
    aws_access_key_id:     str = ""
    aws_secret_access_key: str = ""

    signed_url_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # AI analysis service
    # ------------------------------------------------------------------
    bedrock_model_id: str   = "anthropic.claude-3-5-sonnet-20241022-v2:0"
    llm_max_tokens:   int   = 4096
    llm_temperature:  float = 0.0
    ai_request_timeout_seconds: int = 300

    # Retry / backoff for a single unit
    ai_max_attempts:     int   = 5
    ai_retry_base_delay: float = 2.0    # seconds, doubled each retry
    ai_retry_max_delay:  float = 60.0   # cap
    ai_retry_jitter:     float = 1.0    # uniform(0, jitter) added per wait

    # ------------------------------------------------------------------
    # Pacing (independent of retry backoff)
    # ------------------------------------------------------------------
    inter_unit_delay:      float = 1.0
    large_unit_delay:      float = 2.0
    large_unit_bytes:      int   = 5 * MB
    document_delay:        float = 1.0
    medium_document_delay: float = 1.5
    large_document_delay:  float = 2.0
    rate_limit_cooldown:   float = 30.0

    # ------------------------------------------------------------------
    # Decomposition thresholds
    # ------------------------------------------------------------------
    max_direct_pdf_bytes: int = 10 * MB
    max_batch_bytes:      int = 8 * MB
    max_pages_per_batch:  int = 5
    max_total_pages:      int = 500
    min_text_length:      int = 500
    min_chars_per_page:   int = 100
    text_chunk_size:      int = 40_000

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------
    checkpoint_every:                 int = 5
    max_consecutive_service_failures: int = 3
    log_flush_count:                  int = 20
    log_retention:                    int = 1000

    # "celery" | "inline" (immediate in-process execution, no broker)
    task_backend: str = "celery"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False
    cors_origins: list[str] = ["https://audit.example.com"]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


# ---------------------------------------------------------------------------
# Pipeline limits — explicit value passed through the processing layer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineLimits:
    max_direct_pdf_bytes: int   = 10 * MB
    max_batch_bytes:      int   = 8 * MB
    max_pages_per_batch:  int   = 5
    max_total_pages:      int   = 500
    min_text_length:      int   = 500
    min_chars_per_page:   int   = 100
    text_chunk_size:      int   = 40_000
    inter_unit_delay:     float = 1.0
    large_unit_delay:     float = 2.0
    large_unit_bytes:     int   = 5 * MB

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> "PipelineLimits":
        cfg = cfg or get_settings()
        return cls(
            max_direct_pdf_bytes=cfg.max_direct_pdf_bytes,
            max_batch_bytes=cfg.max_batch_bytes,
            max_pages_per_batch=cfg.max_pages_per_batch,
            max_total_pages=cfg.max_total_pages,
            min_text_length=cfg.min_text_length,
            min_chars_per_page=cfg.min_chars_per_page,
            text_chunk_size=cfg.text_chunk_size,
            inter_unit_delay=cfg.inter_unit_delay,
            large_unit_delay=cfg.large_unit_delay,
            large_unit_bytes=cfg.large_unit_bytes,
        )
