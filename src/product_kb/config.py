"""Configuration management using pydantic-settings."""

import logging

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Product Knowledge Base"
    DEBUG: bool = False
    CORS_ORIGINS: str = "*"  # Comma-separated list of allowed origins

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./product_kb.db"

    # HTTP
    HTTP_TIMEOUT: float = 30.0  # Default timeout for the shared client
    HTTP_MAX_CONNECTIONS: int = 20

    # LLM Provider Selection
    LLM_PROVIDER: str = "claude"  # 'ollama', 'claude', or empty for auto-select
    LLM_TIMEOUT: float = 60.0

    # Anthropic (Claude)
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"

    # Ollama (local LLM and embeddings)
    OLLAMA_BASE_URL: str = "http://ollama:11434"
    OLLAMA_LLM_MODEL: str = "llama3.1:8b"
    OLLAMA_EMBEDDING_MODEL: str = "nomic-embed-text"

    # Embeddings
    EMBEDDING_PROVIDER: str = "openai"  # 'openai', 'ollama' or 'sentence-transformer'
    OPENAI_API_KEY: str = ""
    OPENAI_API_URL: str = "https://api.openai.com/v1"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"  # sentence-transformer model
    EMBEDDING_DIMENSION: int = 1536
    EMBEDDING_TIMEOUT: float = 30.0  # Per-request timeout in seconds
    EMBEDDING_MAX_RETRIES: int = 4  # Attempts for retryable failures
    EMBEDDING_CONCURRENCY: int = 4  # Max in-flight embedding requests per process

    # Chunking
    CHUNK_MAX_TOKENS: int = 500
    CHUNK_OVERLAP_TOKENS: int = 50

    # Search
    SEARCH_DEFAULT_LIMIT: int = 10
    SEARCH_MAX_LIMIT: int = 50  # Hard cap regardless of what callers ask for
    CONTEXT_SEARCH_LIMIT: int = 20
    CONTEXT_MIN_SIMILARITY: float = 0.1
    CONTEXT_POOL_SLOTS: int = 8  # Shared between evidence and code
    CONTEXT_SPEC_SLOTS: int = 3

    # Clustering
    CLUSTER_SIMILARITY_THRESHOLD: float = 0.75
    CLUSTER_MIN_EVIDENCE: int = 3
    CLUSTER_MAX_EVIDENCE: int = 200  # Most recent items considered per compute
    CLUSTER_RECOMPUTE_HOURS: float = 6.0
    CLUSTER_EVIDENCE_DELTA: int = 5
    CLUSTER_LEASE_MINUTES: float = 5.0
    CLUSTER_IDENTITY_JACCARD: float = 0.5
    NUDGE_LIMIT: int = 3
    NUDGE_SIMILARITY_WEIGHT: float = 0.6
    NUDGE_RELEVANCE_WEIGHT: float = 0.4

    # Auto-linking
    AUTO_LINK_THRESHOLD: float = 0.8
    AUTO_LINK_CANDIDATES: int = 10

    # Codebase sync
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TOKEN: str = ""  # Fallback token when a request carries none
    SYNC_BATCH_SIZE: int = 5
    SYNC_MAX_FILE_BYTES: int = 100_000
    SYNC_STALE_MINUTES: float = 5.0
    SYNC_SUMMARY_CHARS: int = 4000  # Source prefix sent to the summarizer

    @property
    def cors_origin_list(self) -> list[str]:
        """Get allowed CORS origins as a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @model_validator(mode="after")
    def check_provider_settings(self) -> "Settings":
        """Warn about provider settings that will fail at runtime."""
        if (
            not self.DEBUG
            and self.EMBEDDING_PROVIDER.lower() == "openai"
            and not self.OPENAI_API_KEY
        ):
            logging.warning(
                "OPENAI_API_KEY is not set; embedding requests will fail until it is configured"
            )
        return self


settings = Settings()
