"""
Configuration management for ClipGuard service.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API Settings
    app_name: str = "ClipGuard - Video Vetting Pipeline"
    version: str = "1.0.0"
    api_prefix: str = "/v1"
    log_level: str = "INFO"

    # Database Settings
    database_url: str = "sqlite:///./clipguard.db"

    # Working directories
    upload_dir: str = "./uploads"
    processed_dir: str = "./uploads/processed"
    temp_dir: str = "/tmp/clipguard"

    # FFmpeg binaries (None = resolve from PATH)
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None

    # Probabilistic backend (Sightengine)
    sightengine_api_user: str = ""
    sightengine_api_secret: str = ""
    sightengine_url: str = "https://api.sightengine.com/1.0/check.json"
    sightengine_models: str = "nudity,wad,offensive"
    sightengine_timeout_sec: float = 4.0  # Keep below frame_timeout_sec

    # Categorical backend (Google Cloud Vision SafeSearch)
    google_cloud_keyfile: Optional[str] = None

    # Frame sampling / classification
    frame_timeout_sec: float = 5.0
    frame_extraction_timeout_sec: float = 30.0
    min_analysis_duration_sec: float = 3.0
    max_sampled_frames: int = 20
    frame_size: str = "320x240"

    # Aggregation policy
    flag_ratio_threshold: float = 0.15
    large_file_bytes: int = 200 * 1024 * 1024
    long_duration_sec: float = 3600.0
    extraction_failure_status: str = "flagged"  # "flagged" or "safe"

    # Transcoding (None = unbounded)
    transcode_timeout_sec: Optional[float] = None

    # Progress channel
    subscriber_queue_size: int = 100

    # Remote consumer
    poll_interval_sec: float = 2.0
    reconnect_delay_sec: float = 1.0

    @property
    def sightengine_configured(self) -> bool:
        return bool(self.sightengine_api_user and self.sightengine_api_secret)


# Global settings instance
settings = Settings()
