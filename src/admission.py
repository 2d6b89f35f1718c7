"""
Per-package concurrent stream ceiling.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import repository
from errors import ConcurrencyLimitError, PersistenceError
from models import StreamState
from orm import Profile, Stream

logger = logging.getLogger(__name__)


class AdmissionController:
    """Counts a subscriber's starting/running streams against the package limit.

    ``reserve`` performs the count and the Stream insert as one unit: a
    per-user lock serializes admissions inside this instance and a row lock
    on the profile serializes them across instances sharing a database that
    supports ``SELECT ... FOR UPDATE``.
    """

    def __init__(self):
        self._user_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def check(self, db: AsyncSession, user_id: str, concurrent_limit: int) -> int:
        """Raise ConcurrencyLimitError if the user is at the ceiling; no mutation."""
        active = await repository.count_active_streams(db, user_id)
        if active >= concurrent_limit:
            raise ConcurrencyLimitError(
                f"Concurrent stream limit reached ({active}/{concurrent_limit})",
                active_streams=active,
                concurrent_limit=concurrent_limit,
            )
        return active

    async def reserve(
        self,
        db: AsyncSession,
        user_id: str,
        channel_id: str,
        concurrent_limit: int,
        **stream_fields,
    ) -> Stream:
        """Admit the user and create their Stream row in state ``starting``."""
        async with self._user_locks[user_id]:
            try:
                await db.execute(select(Profile.id).where(Profile.id == user_id).with_for_update())
                await self.check(db, user_id, concurrent_limit)
                stream = Stream(
                    channel_id=channel_id,
                    user_id=user_id,
                    state=StreamState.STARTING.value,
                    **stream_fields,
                )
                db.add(stream)
                await db.commit()
            except ConcurrencyLimitError as e:
                await db.rollback()
                logger.info(f"🚫 Admission rejected for user {user_id}: {e.message}")
                raise
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to reserve stream for user {user_id}: {e}")
                raise PersistenceError("Failed to create stream record")

        logger.info(f"Admitted stream {stream.id} for user {user_id} on channel {channel_id}")
        return stream
