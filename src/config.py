from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "1.0.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 9001
    LOG_LEVEL: str = "info"
    # Also write logs to this file when set
    LOG_FILE: Optional[str] = None
    RELOAD: bool = False

    # Storage layout
    # Uploaded files are staged here before (and while) they are streamed
    UPLOAD_DIR: str = "uploads"
    # Each stream gets <OUTPUT_DIR>/<stream_id>/index.m3u8 + segment_%05d.ts
    OUTPUT_DIR: str = "output"
    MAX_FILE_SIZE: int = 500 * 1024 * 1024
    UPLOAD_CHUNK_SIZE: int = 1024 * 1024

    # Stream limits
    MAX_CONCURRENT_STREAMS: int = 10

    # Transcoder configuration
    FFMPEG_BINARY: str = "ffmpeg"
    HLS_TIME: int = 6
    # Segment retention is handled by ffmpeg itself (delete_segments)
    HLS_LIST_SIZE: int = 10
    # Seconds to wait after SIGTERM before sending SIGKILL
    STOP_GRACE_PERIOD: float = 5.0
    # Niceness applied to spawned transcoders (higher = lower priority)
    PROCESS_NICENESS: int = 10

    # Two-step merge uploads
    # Pending merges older than this are rejected and their first upload removed
    MERGE_EXPIRY_SECONDS: float = 600.0
    MERGE_OUTPUT_WIDTH: int = 1280
    MERGE_OUTPUT_HEIGHT: int = 720

    # Remove the source video once its stream has ended
    DELETE_INPUT_ON_STOP: bool = True

    # Optional webhook notified when a transcoder exits without being stopped
    STREAM_CALLBACK_URL: Optional[str] = None
    STREAM_CALLBACK_TIMEOUT: int = 3

    # API Authentication
    API_TOKEN: Optional[str] = None

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
