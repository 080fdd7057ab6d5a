"""Central configuration for the liveness demo client."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class LivenessSettings(BaseModel):
    """Detection protocol configuration."""
    step_total_timeout_seconds: float = Field(30.0, description="Wall-clock ceiling for one detection step")
    connect_timeout_seconds: float = Field(10.0, description="Max wait for the streaming session handshake")
    frame_rate: float = Field(10.0, description="Frames per second pushed to the liveness engine")
    jpeg_quality: int = Field(80, description="JPEG quality for streamed frames (0-100)")
    acceptable_session_errors: List[str] = Field(
        default_factory=list, description="Error codes tolerated from the session endpoint"
    )

    @property
    def step_timeout_seconds(self) -> float:
        # A retryable step gets one internal retry, so each attempt gets half the budget
        return self.step_total_timeout_seconds / 2


class CameraSettings(BaseModel):
    """Capture device configuration."""
    device_index: int = Field(0, description="OpenCV device index")
    width: int = Field(1280, description="Requested frame width (pixels)")
    height: int = Field(720, description="Requested frame height (pixels)")
    fps: int = Field(30, description="Requested capture frame rate")
    facing_mode: str = Field("user", description="Requested camera facing mode")


class PerformanceSettings(BaseModel):
    """Queue and preview tuning."""
    ui_event_queue_size: int = Field(16, description="Max buffered UI events per subscriber")
    preview_queue_size: int = Field(2, description="Max buffered preview JPEG frames")
    preview_fps: float = Field(15.0, description="Preview MJPEG frame rate")


class Settings(BaseSettings):
    """Environment-driven settings for the liveness demo."""

    # Remote services
    auth_base_url: str = Field(..., description="OAuth token service base URL")
    streaming_api_url: str = Field(..., description="Liveness REST base URL (session creation)")
    streaming_ws_url: str = Field(..., description="Liveness engine WebSocket URL")
    api_key: SecretStr = Field(..., description="Pre-encoded Basic credential for the token endpoint")
    oauth_scope: str = Field(..., description="Scope requested with the client-credentials grant")

    # HTTP
    http_timeout_seconds: float = Field(15.0, description="Timeout applied to REST calls")
    token_expiry_margin_seconds: int = Field(60, description="Refresh tokens this many seconds early")

    # Demo HTTP Server
    controller_host: str = Field("127.0.0.1", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")
    log_file_name: str = Field("liveness-demo.log", description="Runtime log file name inside log_directory")
    library_log_level: str = Field("WARNING", description="Level for httpx, websockets and uvicorn access loggers")

    # Nested Configuration Objects
    liveness: LivenessSettings = Field(default_factory=LivenessSettings, description="Detection protocol settings")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera settings")
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings, description="Performance tuning")

    @field_validator("auth_base_url", "streaming_api_url", "streaming_ws_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator("log_level", "library_log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()


__all__ = ["CameraSettings", "LivenessSettings", "PerformanceSettings", "Settings", "get_settings"]
