"""Application configuration using Pydantic Settings."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./scenerun.db"

    # Format service (text -> scenes)
    FORMAT_SERVICE_URL: str = "http://localhost:8081"
    FORMAT_TIMEOUT_SECONDS: float = 30.0
    FORMAT_KICKOFF_GRACE_SECONDS: int = 60

    # Image provider (Gemini-style generateContent)
    IMAGE_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    IMAGE_PROVIDER: str = "gemini"
    IMAGE_MODEL: str = "gemini-3-pro-image-preview"
    IMAGE_TIMEOUT_SECONDS: float = 45.0
    IMAGE_MAX_ATTEMPTS: int = 2
    IMAGE_RATE_LIMIT_BASE_SECONDS: float = 2.5
    IMAGE_RATE_LIMIT_MAX_SECONDS: float = 60.0
    IMAGE_RETRY_STEP_SECONDS: float = 2.0
    IMAGE_RETRY_MAX_SECONDS: float = 10.0
    IMAGE_GENERATION_COST_USD: float = 0.134
    IMAGE_STALE_SECONDS: int = 60
    MAX_REFERENCE_IMAGES: int = 5
    # Product decision pending: policy violations are retried like other failures
    RETRY_POLICY_VIOLATIONS: bool = True

    # Credentials
    SYSTEM_IMAGE_API_KEY: Optional[str] = None
    CREDENTIALS_ENCRYPTION_KEY: str = "change-me"

    # Bulk narration service
    AUDIO_SERVICE_URL: str = "http://localhost:8082"
    AUDIO_TIMEOUT_SECONDS: float = 20.0
    AUDIO_KICKOFF_GRACE_SECONDS: int = 30

    # Video build API
    VIDEO_BUILD_ENABLED: bool = False
    VIDEO_BUILD_API_URL: str = "http://localhost:8000/api"
    VIDEO_BUILD_TIMEOUT_SECONDS: float = 15.0
    VIDEO_BUILD_COOLDOWN_MINUTES: int = 30
    VIDEO_BUILD_PENDING_SECONDS: int = 120
    VIDEO_BUILD_STUCK_MINUTES: int = 30
    VIDEO_BUILD_WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_REPLAY_WINDOW_SECONDS: int = 300

    # Blob storage
    BLOB_STORE_ROOT: str = "./blobs"

    # Orchestration
    MAX_RETRY_COUNT: int = 3
    STEP_LOCK_SECONDS: int = 300
    MIN_TEXT_LENGTH: int = 100
    MAX_TEXT_LENGTH: int = 50000

    # Sweeper
    SWEEPER_ENABLED: bool = False
    SWEEPER_POLL_INTERVAL: int = 30

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()
