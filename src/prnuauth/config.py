"""Environment-based configuration for the PRNU authentication service."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Overrides applied on top of the defaults by Settings.from_preset().
PRESETS: dict[str, dict[str, Any]] = {
    "default": {},
    "fast": {
        "enrollment_image_count": 30,
        "pce_threshold": 50.0,
        "processing_width": 256,
        "processing_height": 256,
        "denoiser": "fast",
        "max_concurrent": 8,
    },
    "high_accuracy": {
        "enrollment_image_count": 100,
        "pce_threshold": 70.0,
        "processing_width": 1024,
        "processing_height": 1024,
        "enable_gamma_correction": True,
        "max_concurrent": 2,
    },
}


class Settings(BaseSettings):
    """Application settings loaded from PRNUAUTH_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PRNUAUTH_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8090

    # Authentication (None = disabled)
    api_key: str | None = None

    # Enrollment and decision
    enrollment_image_count: int = Field(default=50, ge=1)
    pce_threshold: float = Field(default=60.0, gt=0)

    # Processing grid
    processing_width: int = Field(default=512, gt=0)
    processing_height: int = Field(default=512, gt=0)
    tamper_block_size: int = Field(default=128, gt=0)

    # Denoising
    denoiser: Literal["adaptive", "fast"] = "adaptive"
    wiener_window_radius: int = Field(default=5, ge=1)
    wiener_noise_floor: float = Field(default=0.01, ge=0)

    # Gamma correction
    enable_gamma_correction: bool = False
    gamma: float = Field(default=2.2, gt=0)

    # Concurrency
    max_concurrent: int = Field(default=4, ge=1)
    request_timeout: float = Field(default=0.0, ge=0)

    # Input limits
    max_upload_files: int = Field(default=500, ge=1)
    max_image_pixels: int = Field(default=100_000_000, ge=1)

    # Fingerprint storage
    enable_secure_storage: bool = True
    storage_dir: str = "data/fingerprints"
    storage_namespace: str = "default"
    storage_key: SecretStr | None = None
    storage_passphrase: SecretStr | None = None

    # AI-image classifier (disabled unless a repo is configured)
    device: Literal["cpu", "cuda"] = "cpu"
    ai_model_repo_id: str | None = None
    ai_model_filename: str = "model.onnx"
    ai_model_labels: list[str] = Field(default_factory=lambda: ["fake", "real"])
    ai_model_input_size: int = Field(default=224, gt=0)
    models_dir: str = "models"
    model_ttl: int = Field(default=300, ge=0)
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_block_grid(self) -> Settings:
        bs = self.tamper_block_size
        if self.processing_width % bs or self.processing_height % bs:
            raise ValueError(
                f"processing size {self.processing_width}x{self.processing_height} "
                f"is not divisible by tamper_block_size={bs}"
            )
        return self

    @property
    def pixel_count(self) -> int:
        return self.processing_width * self.processing_height

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> Settings:
        """Build settings from a named preset, with explicit overrides on top."""
        try:
            values = dict(PRESETS[name])
        except KeyError:
            raise KeyError(f"Unknown preset: {name}") from None
        values.update(overrides)
        return cls(**values)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
