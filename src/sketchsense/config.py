"""Environment-based configuration for SketchSense."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Application settings loaded from SKETCHSENSE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SKETCHSENSE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model storage
    assets_dir: Path = _PACKAGE_DIR / "assets"
    models_dir: Path = Path("models")
    default_model: str = "digits"

    # Backend tiers
    use_accelerator: bool = True
    accelerator_provider: str = "OpenVINOExecutionProvider"
    accelerator_device: str = "NPU"
    use_gpu: bool = True
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # ONNX Runtime threading (cpu_threads=0 picks the core count, capped)
    cpu_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    warmup_runs: int = Field(default=3, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Preprocessing
    fit_fraction: float = Field(default=0.9, gt=0.0, le=1.0)
    center_by_mass: bool = True

    # Results below this confidence carry an advisory
    low_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
