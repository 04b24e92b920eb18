"""
Application configuration (environment + .env).

Notes:
    - Avoid side effects at import time (no sockets or shared memory here).
    - Protocol constants (frame bounds, message layouts) live in
      `detector_link.core.protocol`; only deployment knobs are settings.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from detector_link.core import protocol


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # IPC endpoints shared with the detector process
    socket_path: str = Field(default=protocol.SOCKET_PATH)
    shm_name: str = Field(default=protocol.SHM_NAME)

    # Timeouts
    connect_timeout_sec: float = Field(default=1.0, ge=0.05, le=30.0)
    io_timeout_sec: float = Field(default=0.5, ge=0.01, le=10.0)

    # Liveness
    heartbeat_interval_sec: float = Field(default=5.0, ge=0.1, le=600.0)
    heartbeat_timeout_sec: float = Field(default=1.0, ge=0.05, le=30.0)
    heartbeat_max_attempts: int = Field(default=5, ge=1, le=100)

    # Reconnect policy (advisory for the client, enforced by the detection loop)
    auto_reconnect: bool = Field(default=True)
    reconnect_interval_sec: float = Field(default=2.0, ge=0.1, le=300.0)

    # Frame submission throttle (detection runs slower than capture)
    detection_interval_sec: float = Field(default=0.1, ge=0.0, le=60.0)

    # Capture: "" disables, "synthetic", a device index ("0") or a path/URL
    capture_source: str = Field(default="")
    capture_width: int = Field(default=640, ge=1, le=protocol.MAX_FRAME_WIDTH)
    capture_height: int = Field(default=480, ge=1, le=protocol.MAX_FRAME_HEIGHT)

    # Service
    service_name: str = Field(default="detector-link")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010, ge=1, le=65535)
    log_level: str = Field(default="INFO")
    # Per-message DEBUG logs from the control channel and client
    log_wire_debug: bool = Field(default=False)

    # API prefix (optional). Keep empty to avoid versioning.
    api_prefix: str = Field(default="")

    def validate(self) -> None:
        """
        Validate configuration. Raises ValueError on invalid configuration.
        """
        errors: list[str] = []

        if not self.socket_path:
            errors.append("socket_path must not be empty")

        # POSIX shared memory names are "/name" with no further slashes
        if not self.shm_name.startswith("/") or "/" in self.shm_name[1:]:
            errors.append(f"shm_name must look like '/name', got {self.shm_name!r}")

        if self.heartbeat_timeout_sec >= self.heartbeat_interval_sec:
            errors.append("heartbeat_timeout_sec must be shorter than heartbeat_interval_sec")

        if self.api_prefix:
            if not self.api_prefix.startswith("/"):
                errors.append("api_prefix must start with '/' or be empty")
            if self.api_prefix != "/" and self.api_prefix.endswith("/"):
                errors.append("api_prefix must not end with '/' (use '/api', not '/api/')")

        if errors:
            raise ValueError("Configuration validation failed:\n  - " + "\n  - ".join(errors))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Cached settings accessor.
    """
    return Settings()
