"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # GitHub (source API)
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TOKEN: str = ""
    GITHUB_RATE_LIMIT: int = 5000  # Requests per window per credential
    GITHUB_RATE_WINDOW_SECONDS: int = 3600
    GITHUB_MAX_ATTEMPTS: int = 3
    ISSUES_PAGE_SIZE: int = 100

    # Embeddings (OpenAI-compatible provider)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBED_DIM: int = 1536  # Must match the model's output dimension
    EMBEDDING_REQUESTS_PER_MINUTE: int = 100
    EMBEDDING_REQUESTS_PER_DAY: int = 2000
    EMBEDDING_RATE_LIMIT_DELAY: float = 1.0
    EMBEDDING_SERVER_ERROR_DELAY: float = 2.0
    EMBEDDING_MAX_ATTEMPTS: int = 0  # 0 = keep retrying transient errors
    PIPELINE_EMBEDDING_MAX_ATTEMPTS: int = 3  # Cap for the batch worker; failures then count per item

    # Pipeline
    BATCH_SIZE: int = 50
    MAX_ITEM_RETRIES: int = 3
    STALE_AFTER_SECONDS: int = 300
    JOB_TIMEOUT_SECONDS: int = 900
    STAGE_START_TIMEOUT_SECONDS: int = 30
    SIMILARITY_THRESHOLD: float = 0.9

    # Worker
    WORKER_POLL_INTERVAL: int = 5

    # Progress feed
    PROGRESS_POLL_INTERVAL: float = 2.0
    PROGRESS_HEARTBEAT_SECONDS: float = 15.0

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()
