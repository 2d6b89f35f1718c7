from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.3.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8085
    # Public base URL used when building delivery links (playlists, Xtream, stream_url)
    PUBLIC_URL: Optional[str] = None
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"
    ROOT_PATH: str = ""
    SERVICE_NAME: str = "IPTV Stream Gateway"

    # Persistence
    DATABASE_URL: str = "sqlite+aiosqlite:///./iptv-gateway.db"
    DATABASE_ECHO: bool = False

    # Upstream fetching (playlist normalization)
    UPSTREAM_USER_AGENT: str = "IPTV-Stream-Gateway/1.0"
    UPSTREAM_CONNECT_TIMEOUT: float = 10.0
    UPSTREAM_READ_TIMEOUT: float = 30.0

    # Transcoding configuration
    FFMPEG_PATH: str = "ffmpeg"
    TRANSCODE_LOG_DIR: str = "/tmp"
    HLS_OUTPUT_DIR: str = "/tmp/iptv-gateway-hls"
    # Liveness poll interval (seconds) for processes without an exit watcher
    MONITOR_INTERVAL: float = 10.0
    # Time given to the transcoder to exit after SIGTERM before SIGKILL
    STOP_GRACE_SECONDS: float = 5.0
    # Hardware acceleration (overrides /tmp/hwaccel.env when set)
    HW_ACCEL_AVAILABLE: Optional[bool] = None
    HW_ACCEL_TYPE: Optional[str] = None
    HW_ACCEL_DEVICE: Optional[str] = None

    # Redis Configuration for the shared process registry
    REDIS_HOST: str = "localhost"
    REDIS_SERVER_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_ENABLED: bool = False

    # Worker configuration
    WORKER_ID: Optional[str] = None

    # Operator authentication
    API_TOKEN: Optional[str] = None
    ACCESS_TOKEN_TTL_HOURS: int = 24

    # Remote execution credential encryption
    SERVER_MASTER_KEY: Optional[str] = None
    REMOTE_EXEC_TIMEOUT: float = 30.0
    REMOTE_EXEC_MAX_OUTPUT: int = 65536

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )


# Global settings instance
settings = Settings()
