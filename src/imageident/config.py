"""Environment-based configuration for ImageIdent."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from IMAGEIDENT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEIDENT_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model source: a local file wins over the HuggingFace Hub coordinates
    model_path: str | None = None
    model_repo_id: str | None = None
    model_filename: str = "model.onnx"
    model_revision: str | None = None
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Preprocessing (224 for the default model variant, 240 for the alternate one)
    input_height: int = Field(default=224, ge=1)
    input_width: int = Field(default=224, ge=1)
    input_channels: Literal[1, 3] = 3
    normalization_offset: float = 127.5
    normalization_scale: float = Field(default=127.5, gt=0)

    # History (None = unbounded)
    history_limit: int | None = Field(default=None, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Timeouts in seconds (None = wait indefinitely)
    fetch_timeout: float | None = Field(default=None, gt=0)
    inference_timeout: float | None = Field(default=None, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
