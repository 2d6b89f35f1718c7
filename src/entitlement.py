"""
Entitlement checks: active profile, active subscription, active channel.

Checks run in that order and stop at the first failure, so an unauthenticated
caller never learns whether a subscription or channel exists.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession

import repository
from config import settings
from errors import AuthenticationError, AuthorizationError, NotFoundError
from models import ProfileStatus
from orm import Channel, Package, Profile, Subscription, utcnow
from upstream import resolve_channel_ref

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256", "bcrypt"],
    deprecated="auto"
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # Unrecognised hash format
        return False


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class Entitlement:
    profile: Profile
    subscription: Subscription
    package: Package
    channel: Optional[Channel] = None


def channel_in_package(channel: Channel, package: Package) -> bool:
    """Channels without package restrictions are visible to every package."""
    return not channel.package_ids or package.id in channel.package_ids


class EntitlementGate:
    """Validates subscriber identity, subscription and channel availability."""

    async def authenticate_credentials(
        self, db: AsyncSession, username: Optional[str], password: Optional[str]
    ) -> Profile:
        if not username or not password:
            raise AuthenticationError("Authentication required")
        profile = await repository.get_profile_by_username(db, username)
        if profile is None or not verify_password(password, profile.password_hash):
            raise AuthenticationError("Invalid credentials")
        return profile

    async def authenticate_token(self, db: AsyncSession, token: Optional[str]) -> Profile:
        if not token:
            raise AuthenticationError("Authentication required")
        profile = await repository.get_profile_for_token(db, hash_token(token))
        if profile is None:
            raise AuthenticationError("Invalid or expired token")
        return profile

    async def issue_token(self, db: AsyncSession, username: str, password: str) -> Tuple[str, datetime]:
        profile = await self.authenticate_credentials(db, username, password)
        self._require_active(profile)
        token = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(hours=settings.ACCESS_TOKEN_TTL_HOURS)
        await repository.add_access_token(db, profile.id, hash_token(token), expires_at)
        logger.info(f"Issued access token for {profile.username}")
        return token, expires_at

    def _require_active(self, profile: Optional[Profile]) -> Profile:
        if profile is None:
            raise AuthenticationError("Invalid credentials")
        if profile.status != ProfileStatus.ACTIVE.value:
            raise AuthenticationError("Account suspended")
        return profile

    async def check_account(self, db: AsyncSession, profile: Optional[Profile]) -> Entitlement:
        """Steps (a) and (b): active profile and a subscription covering now."""
        profile = self._require_active(profile)
        found = await repository.get_active_subscription(db, profile.id)
        if found is None:
            raise AuthorizationError("No active subscription")
        subscription, package = found
        return Entitlement(profile=profile, subscription=subscription, package=package)

    async def check(self, db: AsyncSession, profile: Optional[Profile], channel_ref: str) -> Entitlement:
        """Full entitlement for one channel. ``channel_ref`` is a channel id
        or its derived numeric id."""
        entitlement = await self.check_account(db, profile)
        channel = await resolve_channel_ref(db, channel_ref)
        if channel is None or not channel.active:
            raise NotFoundError("Channel not found or inactive")
        if not channel_in_package(channel, entitlement.package):
            raise AuthorizationError("Channel is not included in your package")
        entitlement.channel = channel
        return entitlement
