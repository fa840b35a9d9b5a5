"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins over the POSTGRES_* parts when set (e.g. sqlite:// in tests).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="signal_insights")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_PER_MINUTE: int = Field(default=60)
    # Every insight miss can hit the model, so this endpoint gets a tighter window.
    INSIGHT_RATE_LIMIT_PER_MINUTE: int = Field(default=10)

    # Generation (Gemini)
    GOOGLE_AI_API_KEY: Optional[str] = Field(default=None)
    INSIGHT_MODEL: str = Field(default="gemini-2.5-flash")
    GENERATION_ENABLED: bool = Field(default=True)
    GENERATION_TIMEOUT_S: float = Field(default=18.0)
    GENERATION_TEMPERATURE: float = Field(default=0.7)
    GENERATION_MAX_TOKENS: int = Field(default=2048)

    # Signal aggregation
    CHECKIN_WINDOW_DAYS: int = Field(default=30)
    SIGNAL_ATTEMPT_LIMIT: int = Field(default=200)
    EXCERPT_CAP: int = Field(default=160)

    # Nudge selection caps
    NUDGE_MACRO_CAP: int = Field(default=2)
    NUDGE_MICRO_CAP: int = Field(default=1)

    # Client read-through cache defaults (milliseconds)
    CLIENT_CACHE_STALE_MS: int = Field(default=60_000)
    CLIENT_CACHE_MIN_INTERVAL_MS: int = Field(default=5_000)
    CLIENT_CACHE_TIMEOUT_MS: int = Field(default=15_000)
    CLIENT_CACHE_MAX_KEYS: int = Field(default=500)  # memory tier slots kept per process
    INSIGHTS_API_BASE_URL: str = Field(default="http://localhost:8000")

    # Cache Configuration
    CACHE_TTL_DEFAULT: int = Field(default=300)  # 5 minutes
    CLIENT_CACHE_DURABLE_TTL: int = Field(default=86400)  # 1 day

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)


settings = Settings()
