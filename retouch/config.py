"""
Configuration management using pydantic-settings.
Loads from environment variables and .env file.
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class RemovalConfig(BaseSettings):
    """
    Object removal settings.

    These settings can be overridden with environment variables.
    """
    # API settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Retouch Removal API"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # CORS settings (comma-separated string)
    BACKEND_CORS_ORIGINS: str = "*"

    # Stroke mask
    CLOSED_MIN_POINTS: int = 10
    CLOSING_DISTANCE_RATIO: float = 1.0  # multiple of brush radius
    SIMPLIFY_TOLERANCE_RATIO: float = 0.25  # Douglas-Peucker epsilon / radius

    # PatchMatch
    PATCH_SIZE: int = 7
    PATCHMATCH_ITERATIONS: int = 5
    PATCHMATCH_SEARCH_RADIUS: Optional[int] = None  # None -> max(w, h) / 2
    PATCHMATCH_SEED: Optional[int] = None
    PATCHMATCH_INIT_ATTEMPTS: int = 30

    # Heal / fill
    HEAL_RING_MIN: float = 0.05
    HEAL_RING_MAX: float = 0.4
    HEAL_CORRECTION_FALLOFF: float = 1.5
    AUTO_SOURCE_RINGS: int = 6

    # Gradient blending
    BLEND_ITERATIONS: int = 50
    BLEND_MIN_MASK_PIXELS: int = 16

    # Spot removal (fast path)
    SMALL_AREA_THRESHOLD: int = 500
    SPOT_TIMEOUT_MS: int = 500
    SPOT_SAMPLE_RADIUS: int = 3

    # Remote inpainting
    NETWORKED: bool = False
    REMOTE_INPAINT_URL: Optional[str] = None
    REMOTE_TIMEOUT_SECONDS: float = 30.0
    DAILY_REMOTE_LIMIT: int = 5

    # Storage
    DATABASE_URL: str = "sqlite:///retouch.db"
    QUOTA_KEY: str = "default"

    @field_validator("PATCH_SIZE", mode="after")
    @classmethod
    def validate_patch_size(cls, v: int) -> int:
        """
        Patch windows are centred, so the size must be odd.
        """
        if v < 1:
            raise ValueError("PATCH_SIZE must be positive")
        if v % 2 == 0:
            logger.warning(f"PATCH_SIZE={v} is even, using {v + 1}")
            return v + 1
        return v

    @field_validator("HEAL_RING_MAX", mode="after")
    @classmethod
    def validate_ring(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("HEAL_RING_MAX must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def validate_remote(self) -> "RemovalConfig":
        if self.NETWORKED and not self.REMOTE_INPAINT_URL:
            logger.warning("NETWORKED is set but REMOTE_INPAINT_URL is not. Remote inpainting will not work.")
        return self

    class Config:
        case_sensitive = True
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Allow extra fields in .env


class Settings(RemovalConfig):
    """
    Combined application settings.
    """
    pass


# Create settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance."""
    return settings
