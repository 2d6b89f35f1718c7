"""
Per-connection session records for audit and billing.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import repository
from errors import PersistenceError
from orm import PlaybackSession, utcnow

logger = logging.getLogger(__name__)


class SessionRecorder:
    """Opens a Session when a stream is admitted or a pass-through playlist
    is served, and closes a stream's Sessions when the stream ends.

    Pass-through Sessions have no Stream and no closing signal, so they
    stay open.
    """

    async def open(
        self,
        db: AsyncSession,
        user_id: str,
        channel_id: str,
        stream_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> PlaybackSession:
        now = utcnow()
        record = PlaybackSession(
            user_id=user_id,
            stream_id=stream_id,
            channel_id=channel_id,
            client_ip=client_ip,
            user_agent=user_agent,
            device_info=device_info or {"channel_id": channel_id},
            start_time=now,
            last_activity=now,
        )
        try:
            db.add(record)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to record session for user {user_id}: {e}")
            raise PersistenceError("Failed to record session")
        logger.debug(f"Opened session {record.id} (stream={stream_id}, ip={client_ip})")
        return record

    async def open_pass_through(self, db: AsyncSession, user_id: str, channel_id: str,
                                client_ip: Optional[str], user_agent: Optional[str]) -> PlaybackSession:
        return await self.open(db, user_id, channel_id, client_ip=client_ip, user_agent=user_agent)

    async def close_for_stream(self, db: AsyncSession, stream_id: str) -> int:
        """Set end_time on every open Session of the stream."""
        closed = await repository.close_sessions_for_stream(db, stream_id, utcnow())
        if closed:
            logger.debug(f"Closed {closed} session(s) for stream {stream_id}")
        return closed
