"""
Stream lifecycle orchestration.

State machine per Stream::

    starting -> running -> stopping -> stopped
        \\          \\
         +-> error   +-> error

``start`` runs entitlement, then admission (which creates the Stream row),
then either relay delivery through the upstream normalizer or an active
transcode through the supervisor, and finally records the Session.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import repository
from admission import AdmissionController
from entitlement import EntitlementGate
from errors import IPTVError, NotFoundError, PersistenceError
from events import EventManager
from models import EventType, OutputFormat, StreamState, StreamStatusResult
from orm import Profile, Stream, as_utc, utcnow
from redis_config import get_worker_id
from sessions import SessionRecorder
from supervisor import TranscodeSupervisor
from transcoding import TranscodeProfileManager
from upstream import UpstreamNormalizer, primary_source, resolve_channel_ref

logger = logging.getLogger(__name__)


@dataclass
class StartResult:
    stream_id: str
    stream_url: str
    mode: str
    session_id: str
    message: str = "Stream started successfully"


class StreamLifecycleManager:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gate: EntitlementGate,
        admission: AdmissionController,
        normalizer: UpstreamNormalizer,
        supervisor: TranscodeSupervisor,
        recorder: SessionRecorder,
        profiles: TranscodeProfileManager,
        events: Optional[EventManager] = None,
        edge_server_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.gate = gate
        self.admission = admission
        self.normalizer = normalizer
        self.supervisor = supervisor
        self.recorder = recorder
        self.profiles = profiles
        self.events = events
        self.edge_server_id = edge_server_id or get_worker_id()
        supervisor.add_termination_listener(self._on_stream_terminated)

    async def _emit(self, event_type: EventType, stream_id: Optional[str] = None, **data):
        if self.events is not None:
            await self.events.emit(event_type, stream_id, **data)

    async def start(
        self,
        db: AsyncSession,
        profile: Optional[Profile],
        channel_ref: str,
        base_url: str,
        quality: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StartResult:
        entitlement = await self.gate.check(db, profile, channel_ref)
        channel = entitlement.channel
        user_id = entitlement.profile.id
        source = primary_source(channel)
        transcode_profile = self.profiles.select(channel.transcode_profiles, quality)

        stream = await self.admission.reserve(
            db,
            user_id,
            channel.id,
            entitlement.package.concurrent_limit,
            edge_server_id=self.edge_server_id,
            clients_count=1,
        )
        stream_id, channel_id = stream.id, channel.id

        try:
            if transcode_profile is None:
                mode = "relay"
                stream_url = f"{base_url}/streams/{stream_id}/playlist.m3u8"
                await self._start_relay(db, stream_id, source, stream_url)
            else:
                mode = "transcode"
                output = self.supervisor.output_for(stream_id, transcode_profile)
                stream_url = self._transcode_url(base_url, stream_id, output.format, output.url)
                await self.supervisor.start(
                    channel_id, source, output, transcode_profile,
                    stream_id=stream_id, user_id=user_id, stream_url=stream_url,
                )

            session = await self.recorder.open(
                db, user_id, channel_id,
                stream_id=stream_id,
                client_ip=client_ip,
                user_agent=user_agent,
                device_info={"channel_id": channel_id, "quality": quality, "mode": mode},
            )
        except Exception as e:
            await self._abort_start(db, stream_id, channel_id, e)
            raise

        logger.info(f"▶️ Stream {stream_id} started for {entitlement.profile.username} on {channel.name} ({mode})")
        await self._emit(EventType.STREAM_STARTED, stream_id,
                         channel_id=channel_id, user_id=user_id, mode=mode, stream_url=stream_url)
        await self._emit(EventType.SESSION_OPENED, stream_id, session_id=session.id, client_ip=client_ip)
        return StartResult(stream_id=stream_id, stream_url=stream_url, mode=mode, session_id=session.id)

    async def _abort_start(self, db: AsyncSession, stream_id: str, channel_id: str, error: Exception):
        """Release the slot of a start that failed after admission.

        A transcoder that already runs is stopped through the supervisor,
        whose termination listener reports the failure; otherwise the
        reserved Stream is moved to ``error`` here.
        """
        message = error.message if isinstance(error, IPTVError) else str(error)
        logger.error(f"❌ Start of stream {stream_id} failed: {message}")

        if await self.supervisor.has_handle(stream_id):
            try:
                await self.supervisor.stop(stream_id, reason="aborted", error_message=message)
                return
            except IPTVError as e:
                logger.error(f"Failed to stop transcoder of aborted stream {stream_id}: {e.message}")

        try:
            if db.in_transaction():
                await db.rollback()
            await repository.update_stream(
                db, stream_id, state=StreamState.ERROR.value, error_message=message,
                end_timestamp=utcnow(), ffmpeg_pid=None)
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark stream {stream_id} as error: {e}")
        await self._emit(EventType.STREAM_FAILED, stream_id, channel_id=channel_id, error=message)

    async def _start_relay(self, db: AsyncSession, stream_id: str, source, stream_url: str):
        """Relay mode needs no process: confirm the upstream is deliverable
        and move the reserved Stream to running."""
        await self.normalizer.normalize(source)
        try:
            await repository.update_stream(db, stream_id, state=StreamState.RUNNING.value, stream_url=stream_url)
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark relay stream {stream_id} running: {e}")
            raise PersistenceError("Failed to update stream record")

    @staticmethod
    def _transcode_url(base_url: str, stream_id: str, fmt: OutputFormat, rtmp_url: Optional[str]) -> str:
        if fmt == OutputFormat.HLS:
            return f"{base_url}/hls/{stream_id}/playlist.m3u8"
        if fmt == OutputFormat.DASH:
            return f"{base_url}/hls/{stream_id}/manifest.mpd"
        return rtmp_url or ""

    async def stop(self, db: AsyncSession, profile: Profile, channel_ref: str) -> str:
        """Stop the caller's active stream on a channel; returns its id."""
        channel = await resolve_channel_ref(db, channel_ref)
        stream = await repository.find_active_stream(db, profile.id, channel.id) if channel else None
        if stream is None:
            raise NotFoundError("No active stream for this channel")
        await self._stop_stream(db, stream)
        return stream.id

    async def force_stop(self, db: AsyncSession, stream_id: str) -> None:
        """Operator stop by stream id. Also reconciles streams whose process
        this instance does not know about."""
        stream = await repository.get_stream(db, stream_id)
        if stream is None:
            raise NotFoundError("Stream not found")
        if stream.state in (StreamState.STOPPED.value, StreamState.ERROR.value):
            return
        if await self.supervisor.has_handle(stream.id):
            await self.supervisor.stop(stream.id)
        else:
            if stream.ffmpeg_pid:
                logger.warning(f"Stream {stream.id} has pid {stream.ffmpeg_pid} but no handle here; marking stopped")
            await self._finish_without_process(db, stream.id)

    async def _stop_stream(self, db: AsyncSession, stream: Stream):
        if await self.supervisor.has_handle(stream.id):
            # Sessions are closed by the termination listener
            await self.supervisor.stop(stream.id)
        elif stream.ffmpeg_pid:
            raise NotFoundError("Transcoder for this stream is not managed by this instance",
                                stream_id=stream.id)
        else:
            await self._finish_without_process(db, stream.id)

    async def _finish_without_process(self, db: AsyncSession, stream_id: str):
        try:
            await repository.update_stream(db, stream_id, state=StreamState.STOPPING.value)
            await repository.update_stream(
                db, stream_id, state=StreamState.STOPPED.value, end_timestamp=utcnow(), ffmpeg_pid=None)
        except SQLAlchemyError as e:
            logger.error(f"Failed to stop stream {stream_id}: {e}")
            raise PersistenceError("Failed to update stream record")
        await self._close_sessions(db, stream_id)
        logger.info(f"⏹️ Stream {stream_id} stopped")
        await self._emit(EventType.STREAM_STOPPED, stream_id, reason="stopped")

    async def _close_sessions(self, db: AsyncSession, stream_id: str):
        try:
            closed = await self.recorder.close_for_stream(db, stream_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to close sessions for stream {stream_id}: {e}")
            raise PersistenceError("Failed to close sessions")
        if closed:
            await self._emit(EventType.SESSION_CLOSED, stream_id, count=closed)

    async def _on_stream_terminated(self, stream_id: str, reason: str):
        async with self.session_factory() as db:
            await self._close_sessions(db, stream_id)
        event_type = EventType.STREAM_STOPPED if reason == "stopped" else EventType.STREAM_FAILED
        await self._emit(event_type, stream_id, reason=reason)

    async def status(self, db: AsyncSession, profile: Profile, channel_ref: str) -> StreamStatusResult:
        """Pure read of the caller's active stream on a channel."""
        channel = await resolve_channel_ref(db, channel_ref)
        if channel is None:
            return StreamStatusResult(active=False, channel_id=channel_ref, message="No active stream")
        stream = await repository.find_active_stream(db, profile.id, channel.id)
        if stream is None:
            return StreamStatusResult(
                active=False, channel_id=channel.id, channel_name=channel.name, message="No active stream")
        return StreamStatusResult(
            active=True,
            stream_id=stream.id,
            state=StreamState(stream.state),
            channel_id=channel.id,
            channel_name=channel.name,
            start_time=as_utc(stream.start_timestamp),
            stream_url=stream.stream_url,
            clients_count=stream.clients_count,
        )
