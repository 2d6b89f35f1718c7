"""
Query helpers over the relational store. Every function takes the caller's
AsyncSession; committing is left to the caller unless noted.
"""

from datetime import datetime
from typing import Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import ACTIVE_STREAM_STATES, SubscriptionStatus
from orm import (
    AccessToken,
    Channel,
    EpgProgramme,
    Package,
    PlaybackSession,
    Profile,
    ServerCredentialAccessLog,
    Stream,
    StreamingServer,
    Subscription,
    utcnow,
)

_ACTIVE_STATES = [state.value for state in ACTIVE_STREAM_STATES]


async def get_profile(db: AsyncSession, user_id: str) -> Optional[Profile]:
    return await db.get(Profile, user_id)


async def get_profile_by_username(db: AsyncSession, username: str) -> Optional[Profile]:
    result = await db.execute(select(Profile).where(Profile.username == username))
    return result.scalar_one_or_none()


async def get_profile_for_token(db: AsyncSession, token_hash: str, now: Optional[datetime] = None) -> Optional[Profile]:
    now = now or utcnow()
    result = await db.execute(
        select(Profile)
        .join(AccessToken, AccessToken.user_id == Profile.id)
        .where(AccessToken.token_hash == token_hash, AccessToken.expires_at > now)
    )
    return result.scalar_one_or_none()


async def add_access_token(db: AsyncSession, user_id: str, token_hash: str, expires_at: datetime) -> AccessToken:
    token = AccessToken(user_id=user_id, token_hash=token_hash, expires_at=expires_at)
    db.add(token)
    await db.commit()
    return token


async def get_active_subscription(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> Optional[Tuple[Subscription, Package]]:
    """Latest-ending active subscription covering ``now``, with its package."""
    now = now or utcnow()
    result = await db.execute(
        select(Subscription, Package)
        .join(Package, Package.id == Subscription.package_id)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.start_date <= now,
            Subscription.end_date > now,
        )
        .order_by(Subscription.end_date.desc())
        .limit(1)
    )
    row = result.first()
    return (row[0], row[1]) if row else None


async def get_channel(db: AsyncSession, channel_id: str) -> Optional[Channel]:
    return await db.get(Channel, channel_id)


async def list_active_channels(db: AsyncSession, by_category: bool = False) -> Sequence[Channel]:
    query = select(Channel).where(Channel.active.is_(True))
    if by_category:
        query = query.order_by(Channel.category, Channel.name)
    else:
        query = query.order_by(Channel.name)
    result = await db.execute(query)
    return result.scalars().all()


async def count_active_streams(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.count(Stream.id)).where(Stream.user_id == user_id, Stream.state.in_(_ACTIVE_STATES))
    )
    return int(result.scalar_one())


async def get_stream(db: AsyncSession, stream_id: str) -> Optional[Stream]:
    return await db.get(Stream, stream_id)


async def find_active_stream(db: AsyncSession, user_id: str, channel_id: str) -> Optional[Stream]:
    result = await db.execute(
        select(Stream)
        .where(
            Stream.user_id == user_id,
            Stream.channel_id == channel_id,
            Stream.state.in_(_ACTIVE_STATES),
        )
        .order_by(Stream.start_timestamp.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_stream(db: AsyncSession, stream_id: str, **fields) -> None:
    await db.execute(update(Stream).where(Stream.id == stream_id).values(**fields))
    await db.commit()


async def close_sessions_for_stream(db: AsyncSession, stream_id: str, end_time: datetime) -> int:
    result = await db.execute(
        update(PlaybackSession)
        .where(PlaybackSession.stream_id == stream_id, PlaybackSession.end_time.is_(None))
        .values(end_time=end_time, last_activity=end_time)
    )
    await db.commit()
    return result.rowcount or 0


async def list_programmes(
    db: AsyncSession,
    channel_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> Sequence[EpgProgramme]:
    """Programmes that have not ended yet, ordered by start time."""
    since = since or utcnow()
    query = select(EpgProgramme).where(EpgProgramme.end_time >= since)
    if channel_id is not None:
        query = query.where(EpgProgramme.channel_id == channel_id)
    query = query.order_by(EpgProgramme.start_time)
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


async def get_server(db: AsyncSession, server_id: str) -> Optional[StreamingServer]:
    return await db.get(StreamingServer, server_id)


async def add_credential_access_log(db: AsyncSession, **fields) -> ServerCredentialAccessLog:
    entry = ServerCredentialAccessLog(**fields)
    db.add(entry)
    await db.commit()
    return entry
