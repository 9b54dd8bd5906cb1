from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_dir() -> Path:
    return Path.home() / ".config" / "maqam"


def _default_artifact_root() -> Path:
    return Path.home() / "Music" / "Maqam"


class Settings(BaseSettings):
    """Runtime configuration for the Maqam worker process."""

    model_config = SettingsConfigDict(
        env_prefix="MAQAM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    config_dir: Path = Field(default_factory=_default_config_dir)
    artifact_root: Path = Field(default_factory=_default_artifact_root)
    default_scale_id: str = Field(default="rast", max_length=32)
    default_tempo_bpm: float = Field(default=80.0, gt=0.0, le=300.0)
    default_duration_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    default_volume: float = Field(default=0.7, ge=0.0, le=1.0)
    auto_stop_guard_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=10.0,
        description="Extra wall-clock time after the duration before the session stops itself.",
    )
    capture_stop_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        le=60.0,
        description="Maximum wait for the capture handle to finish when a session stops.",
    )
    transport_tick_seconds: float = Field(
        default=0.01,
        gt=0.0,
        le=0.5,
        description="Polling interval of the transport driver task.",
    )
    sample_rate: int = Field(
        default=48_000,
        ge=8_000,
        le=192_000,
        description="Sample rate of the reference synth voice bank and captures.",
    )
    export_scope: str = Field(
        default="maqam_ambience",
        min_length=1,
        max_length=64,
        description="Leading token of exported file names.",
    )
    export_bit_depth: str = Field(
        default="pcm24",
        description="Default bit depth encoding for exported audio (pcm16, pcm24, pcm32, float32).",
        max_length=16,
    )
    export_format: str = Field(
        default="wav",
        description="Container format for exported audio artifacts.",
        max_length=16,
    )

    @model_validator(mode="after")
    def _normalise_tokens(self) -> "Settings":
        self.default_scale_id = self.default_scale_id.strip().lower() or "rast"
        self.export_format = self.export_format.strip().lower() or "wav"
        self.export_bit_depth = self.export_bit_depth.strip().lower() or "pcm24"
        return self

    def ensure_directories(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.artifact_root.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
