"""Environment-based configuration for OnnxSight."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from ONNXSIGHT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ONNXSIGHT_",
        case_sensitive=False,
    )

    # Inspection server
    host: str = "127.0.0.1"
    port: int = 8090

    # Authentication (None = disabled)
    api_key: str | None = None

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ONNX Runtime
    device: Literal["cpu", "cuda", "coreml", "openvino"] = "cpu"
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    graph_optimization: Literal["disable", "basic", "extended", "all"] = "all"

    # Where known models and hf:// downloads live
    models_dir: str = "assets/models"

    # GPU readback polling
    readback_poll_iterations: int = Field(default=100, ge=1)
    readback_poll_interval_ms: float = Field(default=1.0, ge=0.0)

    # Detector defaults
    pose_confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    face_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_faces: int = Field(default=10, ge=1)
    nms_iou_threshold: float = Field(default=0.3, ge=0.0, le=1.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
