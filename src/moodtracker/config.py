"""Environment-based configuration for MoodTracker."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from MOODTRACKER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MOODTRACKER_",
        case_sensitive=False,
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Bundled (read-only) model
    models_dir: Path = Path("models")
    bundled_model_file: str = "EmotionsImageClassifier.npz"
    bundled_model_repo: str | None = None

    # Personalized model storage
    storage_dir: Path = Path("data")
    updated_model_name: str = "UpdatedModel"
    scratch_dir: Path | None = None

    # Personalization policy
    label_policy: Literal["free_text", "vocabulary"] = "free_text"
    update_base: Literal["active", "bundled"] = "active"
    update_timeout: float | None = Field(default=None, gt=0)

    unknown_label: str = "Unknown"

    @property
    def bundled_model_path(self) -> Path:
        return self.models_dir / self.bundled_model_file

    @property
    def updated_model_path(self) -> Path:
        return self.storage_dir / f"{self.updated_model_name}.npz"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
