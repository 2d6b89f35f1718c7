from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator
from typing import List, Optional, Dict, Any, Literal, Tuple
from enum import Enum
from datetime import datetime, timezone
import uuid


class StreamState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


# States that count against a subscriber's concurrent-stream ceiling
ACTIVE_STREAM_STATES = (StreamState.STARTING, StreamState.RUNNING)


class ProfileStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"
    INACTIVE = "inactive"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class UpstreamFormat(str, Enum):
    RAW_TRANSPORT_STREAM = "raw_transport_stream"
    LEGACY_PLAYLIST = "legacy_playlist"
    HLS_PLAYLIST = "hls_playlist"
    OPAQUE = "opaque"


class OutputFormat(str, Enum):
    HLS = "hls"
    DASH = "dash"
    RTMP = "rtmp"


class PlaylistFormat(str, Enum):
    HLS = "hls"
    MPEGTS = "mpegts"
    BOTH = "both"


class EventType(str, Enum):
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    STREAM_FAILED = "stream_failed"
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"


def classify_source_url(url: str) -> UpstreamFormat:
    """Classify an upstream URL by suffix/substring, in precedence order."""
    url_lower = url.lower()
    if url_lower.endswith('.ts') or 'mpegts' in url_lower or 'mpeg-ts' in url_lower:
        return UpstreamFormat.RAW_TRANSPORT_STREAM
    if url_lower.endswith('.m3u') and not url_lower.endswith('.m3u8'):
        return UpstreamFormat.LEGACY_PLAYLIST
    if '.m3u8' in url_lower:
        return UpstreamFormat.HLS_PLAYLIST
    return UpstreamFormat.OPAQUE


class UpstreamSource(BaseModel):
    """One configured origin for a channel.

    The format is classified once when the source is configured and stored
    alongside the URL, so delivery never re-sniffs it.
    """
    url: str
    format: Optional[UpstreamFormat] = None
    quality: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def model_post_init(self, __context) -> None:
        if self.format is None:
            self.format = classify_source_url(self.url)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)


class VideoSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    codec: str
    bitrate: str
    resolution: Optional[str] = None
    fps: Optional[int] = None


class AudioSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    codec: str
    bitrate: str
    sample_rate: Optional[int] = None


class TranscodeProfile(BaseModel):
    """Immutable encoder settings selected by channel configuration."""
    model_config = ConfigDict(frozen=True)

    name: str
    video: VideoSettings
    audio: AudioSettings
    output_format: OutputFormat = OutputFormat.HLS
    preset: str = "medium"
    options: Tuple[str, ...] = ()
    segment_duration: int = 6
    # Playlist window; HLS defaults to 10 entries, DASH to 5
    window_size: Optional[int] = None


class StreamOutput(BaseModel):
    """Where the transcoder writes. ``path`` is a directory for HLS/DASH,
    ``url`` the destination for RTMP."""
    format: OutputFormat
    path: Optional[str] = None
    url: Optional[str] = None


class SessionControlRequest(BaseModel):
    action: Literal["start", "stop", "status"]
    channel_id: str
    quality: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator('channel_id')
    @classmethod
    def validate_channel_id(cls, v):
        if not v or not v.strip():
            raise ValueError("channel_id cannot be empty")
        return v.strip()


class StreamStatusResult(BaseModel):
    active: bool
    stream_id: Optional[str] = None
    state: Optional[StreamState] = None
    channel_id: Optional[str] = None
    channel_name: Optional[str] = None
    start_time: Optional[datetime] = None
    stream_url: Optional[str] = None
    clients_count: int = 0
    message: Optional[str] = None


class TokenRequest(BaseModel):
    username: str
    password: str


class ServerCredentials(BaseModel):
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None
    port: Optional[int] = None


class ServerActionRequest(BaseModel):
    action: Literal["store", "retrieve", "test_connection", "execute_command"]
    server_id: str
    credentials: Optional[ServerCredentials] = None
    command: Optional[str] = None

    @model_validator(mode="after")
    def check_action_payload(self):
        if self.action == "store" and self.credentials is None:
            raise ValueError("store requires credentials")
        if self.action == "execute_command" and not self.command:
            raise ValueError("execute_command requires a command")
        return self


class StreamEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    stream_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    url: HttpUrl
    events: List[EventType] = Field(default_factory=lambda: list(EventType))
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = 10
    retry_attempts: int = 3


class HealthCheck(BaseModel):
    status: str
    version: str
    database: bool
    active_processes: int
    registry: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
