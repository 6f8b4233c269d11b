"""
Configuration management for the Suspense soundscape engine.
Loads settings from environment variables.
"""

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "suspense"
    app_version: str = "0.1.0"
    env: Literal["development", "staging", "production"] = "development"
    debug: bool = True

    # Audio context
    sample_rate: int = 44100
    render_quantum: int = 128  # frames per graph evaluation

    # Output device
    output_device: Optional[str] = None  # None = system default
    output_block_size: int = 1024
    output_buffer_blocks: int = 4

    # Driver loop
    driver_interval: float = 0.005  # seconds between scheduler/render ticks

    # Randomness (None = fresh entropy each session)
    random_seed: Optional[int] = None

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    model_config = SettingsConfigDict(
        env_prefix="SUSPENSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env == "production"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance."""
    return settings
