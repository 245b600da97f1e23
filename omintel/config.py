# omintel/config.py
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

from omintel.extraction import truncation_marker

class Settings(BaseSettings):
    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/omintel", env="DATABASE_URL")

    # Celery / Redis
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    celery_queue: str = Field("extraction_queue", env="CELERY_QUEUE")
    # "celery" queues extraction on the worker, "inline" runs it as an asyncio task
    extraction_dispatch: str = Field("celery", env="EXTRACTION_DISPATCH")

    # Upstream completion API (OpenAI-compatible)
    openai_base: str = Field("https://api.openai.com/v1", env="OPENAI_BASE")
    openai_api_key: str = Field("", env="OPENAI_API_KEY")
    chat_model: str = Field("gpt-4o", env="CHAT_MODEL")
    chat_temperature: float = Field(0.1, env="CHAT_TEMPERATURE")
    chat_max_tokens: int = Field(3000, env="CHAT_MAX_TOKENS")
    snapshot_model: str = Field("gpt-4o", env="SNAPSHOT_MODEL")
    snapshot_fallback_model: str = Field("gpt-4o-mini", env="SNAPSHOT_FALLBACK_MODEL")
    upstream_timeout: float = Field(60.0, env="UPSTREAM_TIMEOUT")

    # Identity provider (GoTrue-compatible)
    identity_url: str = Field("http://localhost:54321", env="IDENTITY_URL")
    identity_api_key: str = Field("", env="IDENTITY_API_KEY")
    # gates the synthetic anonymous user of /chat-stream
    allow_anonymous_chat: bool = Field(False, env="ALLOW_ANONYMOUS_CHAT")

    # Blob store
    storage_backend: str = Field("local", env="STORAGE_BACKEND")  # "local" or "minio"
    upload_dir: str = Field(".data", env="UPLOAD_DIR")
    public_base_url: str = Field("http://localhost:8000/files", env="PUBLIC_BASE_URL")
    minio_endpoint: Optional[str] = Field(None, env="MINIO_ENDPOINT")
    minio_access_key: Optional[str] = Field(None, env="MINIO_ACCESS_KEY")
    minio_secret_key: Optional[str] = Field(None, env="MINIO_SECRET_KEY")
    minio_bucket: str = Field("documents", env="MINIO_BUCKET")
    minio_secure: bool = Field(False, env="MINIO_SECURE")

    # Uploads
    max_upload_size: int = Field(10 * 1024 * 1024, env="MAX_UPLOAD_SIZE")
    free_monthly_uploads: int = Field(5, env="FREE_MONTHLY_UPLOADS")

    # Extraction
    extraction_max_pages: int = Field(10, env="EXTRACTION_MAX_PAGES")
    extraction_max_chars: int = Field(100_000, env="EXTRACTION_MAX_CHARS")

    # Chat
    chat_context_chars: int = Field(6000, env="CHAT_CONTEXT_CHARS")
    chat_rate_limit: int = Field(20, env="CHAT_RATE_LIMIT")
    chat_rate_period: int = Field(60, env="CHAT_RATE_PERIOD")

    # Snapshot
    snapshot_context_chars: int = Field(15_000, env="SNAPSHOT_CONTEXT_CHARS")

    # Extraction job sweeper
    job_batch_size: int = Field(5, env="JOB_BATCH_SIZE")
    job_concurrency: int = Field(3, env="JOB_CONCURRENCY")
    cron_secret: Optional[str] = Field(None, env="CRON_SECRET")

    # CORS
    cors_origins: List[str] = Field(["*"], env="CORS_ORIGINS")

    host: str = Field("0.0.0.0", env="HOST")
    port: int = Field(8000, env="PORT")

    # Prometheus
    prometheus_enabled: bool = Field(True, env="PROMETHEUS_ENABLED")

    # Pydantic v2 config
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ---- field validators (pydantic v2 style) ----
    @field_validator("cors_origins", mode="before")
    def _split_cors_origins(cls, v):
        """
        Allows CORS_ORIGINS as comma-separated string in env, or as a list.
        """
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("storage_backend", mode="before")
    def _normalize_storage_backend(cls, v):
        if v is None:
            return "local"
        v = str(v).strip().lower()
        if v not in ("local", "minio"):
            raise ValueError("STORAGE_BACKEND must be 'local' or 'minio'")
        return v

    @field_validator("extraction_max_pages", "extraction_max_chars", "job_concurrency", mode="before")
    def _validate_positive(cls, v):
        """
        Accepts the env value as string or int and ensures it's a positive int.
        """
        if isinstance(v, str) and v.isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError("value must be a positive integer")
        return v

    @field_validator("extraction_max_chars")
    def _room_for_truncation_marker(cls, v):
        marker_len = len(truncation_marker(v))
        if v < marker_len:
            raise ValueError(f"EXTRACTION_MAX_CHARS must be at least {marker_len} so truncated text keeps its marker")
        return v


settings = Settings()
