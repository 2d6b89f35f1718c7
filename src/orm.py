"""
Relational schema.

Profiles, packages, subscriptions, channels and EPG rows are owned by catalog
management and only read here. Streams, sessions, access tokens and the
credential access log are written by this service.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, BigInteger
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class UUIDMixin:
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


class Profile(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "profiles"

    username: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    roles: Mapped[List[str]] = mapped_column(JSON, default=list)
    # active / suspended / banned / inactive
    status: Mapped[str] = mapped_column(String(20), default="active")
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_admin(self) -> bool:
        return "admin" in (self.roles or [])


class Package(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "packages"

    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    concurrent_limit: Mapped[int] = mapped_column(Integer, default=1)
    bitrate_limits: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2), nullable=True)
    duration_days: Mapped[int] = mapped_column(Integer, default=30)
    features: Mapped[List[str]] = mapped_column(JSON, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class Subscription(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), index=True)
    package_id: Mapped[str] = mapped_column(ForeignKey("packages.id"))
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # active / expired / suspended
    status: Mapped[str] = mapped_column(String(20), default="active")


class Channel(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "channels"

    name: Mapped[str] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Ordered list of {url, format, quality, username?, password?}; first is primary
    upstream_sources: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    # quality -> transcode profile name
    transcode_profiles: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
    epg_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    package_ids: Mapped[List[str]] = mapped_column(JSON, default=list)


class Stream(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "streams"

    channel_id: Mapped[str] = mapped_column(ForeignKey("channels.id"), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(ForeignKey("profiles.id"), index=True, nullable=True)
    # starting / running / stopping / stopped / error
    state: Mapped[str] = mapped_column(String(20), default="starting", index=True)
    ffmpeg_pid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    edge_server_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    clients_count: Mapped[int] = mapped_column(Integer, default=0)
    stream_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class PlaybackSession(Base, UUIDMixin):
    __tablename__ = "sessions"

    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), index=True)
    # Null for pass-through playback without a Stream
    stream_id: Mapped[Optional[str]] = mapped_column(ForeignKey("streams.id"), index=True, nullable=True)
    channel_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    device_info: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    bytes_transferred: Mapped[int] = mapped_column(BigInteger, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class EpgProgramme(Base, UUIDMixin):
    __tablename__ = "epg_programmes"

    channel_id: Mapped[str] = mapped_column(ForeignKey("channels.id"), index=True)
    program_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rating: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class AccessToken(Base, UUIDMixin):
    __tablename__ = "access_tokens"

    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class StreamingServer(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "streaming_servers"

    name: Mapped[str] = mapped_column(String(255))
    hostname: Mapped[str] = mapped_column(String(255))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    port: Mapped[int] = mapped_column(Integer, default=80)
    ssh_port: Mapped[int] = mapped_column(Integer, default=22)
    ssh_username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # base64(iv || ciphertext) of the JSON credential document
    encrypted_credentials: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="offline")


class ServerCredentialAccessLog(Base, UUIDMixin):
    __tablename__ = "server_credential_access_log"

    server_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    accessed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    access_type: Mapped[str] = mapped_column(String(64))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
