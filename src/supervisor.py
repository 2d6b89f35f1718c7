"""
Transcoder process supervision.

Launches FFmpeg for a stream, tracks it in a process registry, tears it
down on request and reconciles persisted Stream state when the process
exits on its own.
"""

import asyncio
import logging
import os
import shutil
import signal
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

import repository
from config import settings
from errors import NotFoundError, PersistenceError, ProcessLaunchError
from hwaccel import HardwareAccelDetector
from models import OutputFormat, StreamOutput, StreamState, TranscodeProfile, UpstreamSource
from orm import Stream, utcnow
from process_registry import ExternalProcessHandle, InMemoryProcessRegistry
from redis_config import get_worker_id
from transcoding import build_command, redact_command

logger = logging.getLogger(__name__)

NO_LOGS_AVAILABLE = "No logs available"

TerminationListener = Callable[[str, str], Awaitable[None]]


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


class TranscodeSupervisor:
    """Owns the lifecycle of every transcoder process this instance starts.

    Processes spawned here are watched through their exit notification.
    Processes adopted from a durable registry after a restart are not our
    children, so they are watched by polling their pid every
    ``monitor_interval`` seconds.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry=None,
        ffmpeg_path: Optional[str] = None,
        log_dir: Optional[str] = None,
        output_dir: Optional[str] = None,
        monitor_interval: Optional[float] = None,
        stop_grace: Optional[float] = None,
        hwaccel: Optional[HardwareAccelDetector] = None,
        worker_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or InMemoryProcessRegistry()
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.log_dir = log_dir or settings.TRANSCODE_LOG_DIR
        self.output_dir = output_dir or settings.HLS_OUTPUT_DIR
        self.monitor_interval = monitor_interval if monitor_interval is not None else settings.MONITOR_INTERVAL
        self.stop_grace = stop_grace if stop_grace is not None else settings.STOP_GRACE_SECONDS
        self.hwaccel = hwaccel
        self.worker_id = worker_id or get_worker_id()

        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._watchers: Dict[str, asyncio.Task] = {}
        self._finalizing: Set[str] = set()
        self._listeners: List[TerminationListener] = []

    def add_termination_listener(self, listener: TerminationListener):
        """Called with (stream_id, reason) once a supervised stream ends."""
        self._listeners.append(listener)

    def log_path(self, stream_id: str) -> str:
        return os.path.join(self.log_dir, f"ffmpeg_{stream_id}.log")

    def output_for(self, stream_id: str, profile: TranscodeProfile, rtmp_url: Optional[str] = None) -> StreamOutput:
        if profile.output_format == OutputFormat.RTMP:
            return StreamOutput(format=OutputFormat.RTMP, url=rtmp_url)
        return StreamOutput(format=profile.output_format, path=os.path.join(self.output_dir, stream_id))

    def build_command(self, source: UpstreamSource, output: StreamOutput,
                      profile: TranscodeProfile, stream_id: str) -> List[str]:
        return build_command(
            source, output, profile, stream_id,
            ffmpeg_path=self.ffmpeg_path,
            service_name=settings.SERVICE_NAME,
            hwaccel=self.hwaccel,
        )

    async def _update_stream(self, stream_id: str, **fields):
        async with self.session_factory() as db:
            await repository.update_stream(db, stream_id, **fields)

    async def _create_stream(self, channel_id: str, user_id: Optional[str]) -> str:
        async with self.session_factory() as db:
            stream = Stream(channel_id=channel_id, user_id=user_id, state=StreamState.STARTING.value)
            db.add(stream)
            await db.commit()
            return stream.id

    async def start(
        self,
        channel_id: str,
        source: UpstreamSource,
        output: StreamOutput,
        profile: TranscodeProfile,
        stream_id: Optional[str] = None,
        user_id: Optional[str] = None,
        stream_url: Optional[str] = None,
    ) -> ExternalProcessHandle:
        """
        Launch the transcoder for a stream and start watching it.

        When ``stream_id`` is given the Stream row already exists in state
        ``starting`` (reserved by admission); otherwise one is created.
        """
        try:
            if stream_id is None:
                stream_id = await self._create_stream(channel_id, user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create stream row for channel {channel_id}: {e}")
            raise PersistenceError("Failed to create stream record")

        log_path = self.log_path(stream_id)
        try:
            cmd = self.build_command(source, output, profile, stream_id)
            if output.path:
                os.makedirs(output.path, exist_ok=True)
            os.makedirs(self.log_dir, exist_ok=True)
            logger.debug(f"Launching transcoder: {redact_command(cmd)}")
            with open(log_path, 'ab') as log_file:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
        except (OSError, ValueError) as e:
            logger.error(f"❌ Failed to launch transcoder for stream {stream_id}: {e}")
            try:
                await self._update_stream(
                    stream_id, state=StreamState.ERROR.value, error_message=str(e), end_timestamp=utcnow())
            except SQLAlchemyError as db_error:
                logger.error(f"Failed to mark stream {stream_id} as error: {db_error}")
            raise ProcessLaunchError(f"Failed to launch transcoder: {e}", stream_id=stream_id)

        handle = ExternalProcessHandle(
            pid=process.pid,
            stream_id=stream_id,
            channel_id=channel_id,
            command=cmd,
            log_path=log_path,
            output_path=output.path,
            owner=self.worker_id,
        )
        try:
            await self._update_stream(
                stream_id,
                state=StreamState.RUNNING.value,
                ffmpeg_pid=process.pid,
                stream_url=stream_url,
                output_path=output.path,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to record running state for stream {stream_id}: {e}")
            await self._terminate_process(process)
            try:
                await self._update_stream(
                    stream_id, state=StreamState.ERROR.value,
                    error_message="Failed to record running state", end_timestamp=utcnow())
            except SQLAlchemyError as db_error:
                logger.error(f"Failed to mark stream {stream_id} as error: {db_error}")
            raise PersistenceError("Failed to update stream record", stream_id=stream_id)

        await self.registry.register(handle)
        self._processes[stream_id] = process
        self._watchers[stream_id] = asyncio.create_task(self._watch_exit(stream_id, process))
        logger.info(f"✅ Transcoder started for stream {stream_id} (pid {process.pid}, profile {profile.name})")
        return handle

    async def stop(self, stream_id: str, reason: str = "stopped", error_message: Optional[str] = None) -> None:
        """
        Terminate a supervised stream: SIGTERM, then SIGKILL after the grace
        period. The Stream ends up ``stopped`` whichever signal worked.
        ``reason`` is what termination listeners are told.

        Raises:
            NotFoundError: if this supervisor has no handle for the stream
        """
        handle = await self.registry.get(stream_id)
        if handle is None or (handle.owner and handle.owner != self.worker_id):
            raise NotFoundError("Process not found", stream_id=stream_id)

        watcher = self._watchers.pop(stream_id, None)
        if watcher and watcher is not asyncio.current_task():
            watcher.cancel()

        try:
            await self._update_stream(stream_id, state=StreamState.STOPPING.value)
        except SQLAlchemyError as e:
            logger.warning(f"Could not mark stream {stream_id} as stopping: {e}")

        process = self._processes.get(stream_id)
        if process is not None:
            await self._terminate_process(process)
        else:
            await self._terminate_pid(handle.pid)

        if not await self._finalize(stream_id, reason, error_message=error_message):
            raise PersistenceError("Failed to update stream record", stream_id=stream_id)
        logger.info(f"🛑 Transcoder stopped for stream {stream_id}")

    async def _terminate_process(self, process: asyncio.subprocess.Process):
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Transcoder pid {process.pid} ignored SIGTERM, killing")
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    async def _terminate_pid(self, pid: int):
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stop_grace
        while loop.time() < deadline:
            if not pid_alive(pid):
                return
            await asyncio.sleep(0.2)
        logger.warning(f"Transcoder pid {pid} ignored SIGTERM, killing")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def _watch_exit(self, stream_id: str, process: asyncio.subprocess.Process):
        returncode = await process.wait()
        logger.warning(f"⚠️ Transcoder for stream {stream_id} exited on its own (code {returncode})")
        await self._finalize(stream_id, "exited", error_message=f"Transcoder exited with code {returncode}")

    async def monitor(self, stream_id: str):
        """Poll the tracked pid until it disappears, then reconcile state."""
        while True:
            handle = await self.registry.get(stream_id)
            if handle is None or stream_id in self._finalizing:
                return
            if not pid_alive(handle.pid):
                logger.warning(f"⚠️ Transcoder pid {handle.pid} for stream {stream_id} is gone")
                await self._finalize(stream_id, "exited")
                return
            await asyncio.sleep(self.monitor_interval)

    async def _finalize(self, stream_id: str, reason: str, error_message: Optional[str] = None) -> bool:
        """Mark the stream stopped, drop its handle and notify listeners.

        A call made while another one for the same stream is still running
        is a no-op, so a stop racing the exit watcher finalizes once.
        """
        if stream_id in self._finalizing:
            return True
        self._finalizing.add(stream_id)
        try:
            self._processes.pop(stream_id, None)
            if self._watchers.get(stream_id) is asyncio.current_task():
                self._watchers.pop(stream_id, None)
            handle = await self.registry.deregister(stream_id)
            if handle and handle.output_path and handle.output_path.startswith(self.output_dir):
                shutil.rmtree(handle.output_path, ignore_errors=True)

            persisted = True
            try:
                await self._update_stream(
                    stream_id,
                    state=StreamState.STOPPED.value,
                    end_timestamp=utcnow(),
                    ffmpeg_pid=None,
                    error_message=error_message,
                )
            except SQLAlchemyError as e:
                logger.error(f"Failed to mark stream {stream_id} stopped: {e}")
                persisted = False

            for listener in self._listeners:
                try:
                    await listener(stream_id, reason)
                except Exception as e:
                    logger.error(f"Error in termination listener for stream {stream_id}: {e}")
            return persisted
        finally:
            self._finalizing.discard(stream_id)

    def get_logs(self, stream_id: str) -> str:
        """Captured transcoder output, or a sentinel if it cannot be read."""
        try:
            with open(self.log_path(stream_id), 'r', errors='replace') as f:
                return f.read()
        except OSError:
            return NO_LOGS_AVAILABLE

    async def has_handle(self, stream_id: str) -> bool:
        return await self.registry.get(stream_id) is not None

    async def active_handles(self) -> List[ExternalProcessHandle]:
        return await self.registry.list()

    async def recover(self) -> int:
        """Adopt this worker's handles left in a durable registry.

        Live pids are polled with ``monitor``; dead ones are reconciled
        immediately. Returns the number of adopted processes.
        """
        adopted = 0
        for handle in await self.registry.list():
            if handle.owner and handle.owner != self.worker_id:
                continue
            if handle.stream_id in self._processes:
                continue
            if pid_alive(handle.pid):
                self._watchers[handle.stream_id] = asyncio.create_task(self.monitor(handle.stream_id))
                adopted += 1
                logger.info(f"Adopted transcoder pid {handle.pid} for stream {handle.stream_id}")
            else:
                await self._finalize(handle.stream_id, "lost")
        return adopted

    async def shutdown(self, stop_processes: bool = True):
        """Stop watching. Running transcoders are stopped unless the registry
        is durable and another start of this worker will adopt them."""
        if stop_processes:
            for stream_id in list(self._processes):
                try:
                    await self.stop(stream_id)
                except Exception as e:
                    logger.error(f"Failed to stop stream {stream_id} during shutdown: {e}")
        for task in list(self._watchers.values()):
            task.cancel()
        self._watchers.clear()
