"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Apparel Design Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    LOCAL_STORAGE_PATH: str = "./data/storage"

    # ==========================================================================
    # Intake Limits
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB
    MAX_BATCH_SIZE: int = 20
    MAX_PROMPT_LENGTH: int = 4000

    # ==========================================================================
    # Generation (Gemini image model)
    # ==========================================================================
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MODEL: str = "gemini-2.5-flash-image-preview"
    GEMINI_TEMPERATURE: float = 0.3
    REFUSAL_TEXT_LIMIT: int = 200

    # ==========================================================================
    # Post-Processing (Picsart)
    # ==========================================================================
    PICSART_API_KEY: Optional[str] = None
    PICSART_API_BASE_URL: str = "https://api.picsart.io/tools/1.0"
    ENABLE_BG_REMOVAL: bool = True  # Used when the upload omits removeBg
    UPSCALE_FACTOR: int = 2

    # ==========================================================================
    # Timeouts (seconds)
    # ==========================================================================
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    POST_PROCESSING_TIMEOUT_SECONDS: float = 60.0
    PIPELINE_TIMEOUT_SECONDS: float = 300.0

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    @property
    def post_processing_enabled(self) -> bool:
        return bool(self.PICSART_API_KEY and self.PICSART_API_KEY.strip())

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
