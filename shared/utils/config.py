"""
Configuration management using Pydantic Settings.

Loads configuration from environment variables with validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses .env file in development, environment variables in production.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="development", description="Deployment environment")
    log_level: str = Field(default="INFO", description="Logging verbosity")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_output: str = Field(default="stdout", description="Log destination")
    app_name: str = Field(default="Palaver Chat API", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")

    # API Service
    api_host: str = Field(default="0.0.0.0", description="API bind host")
    api_port: int = Field(default=8000, ge=1, le=65535, description="API port")
    api_reload: bool = Field(default=True, description="Hot reload in dev")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="Allowed CORS origins (comma-separated)",
    )

    # Completion provider
    groq_api_key: str = Field(..., description="Groq API key for inference")
    groq_model: str = Field(
        default="llama-3.3-70b-versatile", description="Groq model identifier"
    )
    provider_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Deadline for a single completion call"
    )

    # Session storage
    session_store_backend: str = Field(
        default="memory", description="Session store backend: memory or mongo"
    )
    mongo_uri: Optional[str] = Field(None, description="MongoDB connection URI")
    mongo_db_name: str = Field(default="palaver", description="MongoDB database name")
    mongo_collection: str = Field(
        default="chat_sessions", description="Collection holding one document per session"
    )
    max_save_retries: int = Field(
        default=3, ge=0, description="Replays of a turn's writes after a version conflict"
    )

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        allowed = ["development", "staging", "production", "testing"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("session_store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Only the in-memory and MongoDB stores exist."""
        v = v.lower()
        if v not in ("memory", "mongo"):
            raise ValueError("Session store backend must be 'memory' or 'mongo'")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures settings are loaded once and reused.
    """
    return Settings()  # type: ignore
