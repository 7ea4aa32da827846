"""Application settings loaded from environment variables via pydantic-settings.

Values are read from (highest priority first):

  1. Environment variables, e.g. ``OPENAI_API_KEY=sk-abc123``
  2. The ``.env`` file in the working directory
  3. The defaults declared below

Field ``openai_api_key`` maps to env var ``OPENAI_API_KEY``; pydantic-settings
upper-cases and matches automatically.  Tier tables and analyzer thresholds
are structured data and live in ``config/config.yaml`` instead (see
:mod:`docpipe.config.loader`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """docpipe application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # === Embedding provider ===
    openai_api_key: str = ""
    openai_base_url: str = ""  # OpenAI-compatible endpoints (Azure proxy, TogetherAI, ...)
    openai_embedding_model: str = ""  # Empty = text-embedding-3-small
    openai_timeout_seconds: float = 60.0

    # === Token estimation ===
    # tiktoken encoding for exact counts; empty string forces the heuristic.
    tokenizer_encoding: str = "cl100k_base"
    token_safety_multiplier: float = 1.1
    hard_token_limit: int = 8000

    # === Storage ===
    database_path: str = "data/docpipe.db"

    # === Blob fetch ===
    http_timeout_seconds: float = 60.0

    # === Ingestion limits ===
    max_file_size_bytes: int = 100 * 1024 * 1024
    max_text_length: int = 10 * 1024 * 1024
    max_chunks_per_document: int = 10_000
    analyzer_sample_chars: int = 10_000

    # === Embedding batch retries ===
    max_retries: int = 3
    retry_base_delay_ms: int = 2000
    min_batch_delay_ms: int = 50
    throughput_reference_rate: float = 10.0  # chunks/sec at which the delay starts shrinking

    # === Staleness watchdog ===
    stale_after_seconds: int = 1800
    watchdog_interval_seconds: int = 300
    watchdog_enabled: bool = True

    # === App Config ===
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "*"  # Comma-separated

    def get_cors_origins(self) -> list[str]:
        """Return the configured CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]
