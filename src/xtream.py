"""
Xtream-Codes compatible catalog API.

Response shapes follow what existing Xtream player software expects:
string-typed numbers in ``user_info``, base64 EPG titles, numeric
``stream_id`` values derived from channel ids.
"""

import base64
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlencode, urlparse

from sqlalchemy.ext.asyncio import AsyncSession

import repository
from entitlement import Entitlement, EntitlementGate, channel_in_package
from orm import Channel, EpgProgramme, as_utc
from upstream import derive_numeric_id, resolve_numeric_id

logger = logging.getLogger(__name__)

DEFAULT_EPG_LIMIT = 4
ALLOWED_OUTPUT_FORMATS = ["m3u8", "ts", "rtmp"]


def xtream_error_body(message: str) -> Dict[str, Any]:
    return {"user_info": {"auth": 0, "message": message}}


def _epoch(value: Optional[datetime]) -> str:
    value = as_utc(value) or datetime.now(timezone.utc)
    return str(int(value.timestamp()))


def _b64(text: Optional[str]) -> str:
    return base64.b64encode((text or "").encode("utf-8")).decode("ascii")


def category_names(channels: Sequence[Channel]) -> List[str]:
    """Distinct categories in a stable order; category ids are 1-based positions."""
    return sorted({c.category for c in channels if c.category})


def live_categories(channels: Sequence[Channel]) -> List[Dict[str, Any]]:
    return [
        {"category_id": str(index + 1), "category_name": name, "parent_id": 0}
        for index, name in enumerate(category_names(channels))
    ]


def live_streams(
    channels: Sequence[Channel],
    username: str,
    password: str,
    base_url: str,
    category_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    categories = category_names(channels)
    selected = channels
    if category_id and category_id.isdigit() and 0 < int(category_id) <= len(categories):
        wanted = categories[int(category_id) - 1]
        selected = [c for c in channels if c.category == wanted]

    credentials = urlencode({"username": username, "password": password})
    streams = []
    for index, channel in enumerate(selected):
        category_index = categories.index(channel.category) + 1 if channel.category in categories else 0
        streams.append({
            "num": index + 1,
            "name": channel.name,
            "stream_type": "live",
            "stream_id": derive_numeric_id(channel.id),
            "stream_icon": channel.logo_url or "",
            "epg_channel_id": channel.epg_id or "",
            "added": _epoch(channel.created_at),
            "category_id": str(category_index),
            "tv_archive": 0,
            "direct_source": f"{base_url}/live/{channel.id}.m3u8?{credentials}",
            "tv_archive_duration": 0,
        })
    return streams


def epg_listings(programmes: Sequence[EpgProgramme], simple: bool = False) -> Dict[str, Any]:
    listings = []
    for index, programme in enumerate(programmes):
        start = as_utc(programme.start_time)
        end = as_utc(programme.end_time)
        item = {
            "id": programme.id,
            "epg_id": programme.program_id or "",
            "title": _b64(programme.title),
            "lang": "en",
            "description": _b64(programme.description),
            "category": programme.category or "",
            "rating": programme.rating or "",
            "start_timestamp": _epoch(start),
            "stop_timestamp": _epoch(end),
            "start": start.isoformat(),
            "end": end.isoformat(),
        }
        if simple:
            item["now_playing"] = 1 if index == 0 else 0
            item["has_archive"] = 0
        listings.append(item)
    return {"epg_listings": listings}


def account_info(
    entitlement: Entitlement,
    password: str,
    active_connections: int,
    base_url: str,
) -> Dict[str, Any]:
    parsed = urlparse(base_url)
    protocol = parsed.scheme or "http"
    port = str(parsed.port or (443 if protocol == "https" else 80))
    now = datetime.now(timezone.utc)
    return {
        "user_info": {
            "username": entitlement.profile.username,
            "password": password,
            "message": "",
            "auth": 1,
            "status": "Active",
            "exp_date": _epoch(entitlement.subscription.end_date),
            "is_trial": "0",
            "active_cons": str(active_connections),
            "created_at": _epoch(entitlement.profile.created_at),
            "max_connections": str(entitlement.package.concurrent_limit),
            "allowed_output_formats": ALLOWED_OUTPUT_FORMATS,
        },
        "server_info": {
            "url": parsed.hostname or "localhost",
            "port": port,
            "https_port": port if protocol == "https" else "",
            "server_protocol": protocol,
            "rtmp_port": "",
            "timezone": "UTC",
            "timestamp_now": int(now.timestamp()),
            "time_now": now.strftime("%Y-%m-%d %H:%M:%S"),
        },
    }


class XtreamAPI:
    """Dispatches ``player_api.php`` actions for an authenticated subscriber."""

    def __init__(self, gate: EntitlementGate):
        self.gate = gate

    async def dispatch(
        self,
        db: AsyncSession,
        username: Optional[str],
        password: Optional[str],
        params: Mapping[str, str],
        base_url: str,
    ) -> Any:
        profile = await self.gate.authenticate_credentials(db, username, password)
        entitlement = await self.gate.check_account(db, profile)
        action = params.get("action") or ""
        logger.debug(f"Xtream API request - action: {action or 'auth'}, user: {username}")

        if action in ("get_live_categories", "get_live_streams"):
            channels = [c for c in await repository.list_active_channels(db)
                        if channel_in_package(c, entitlement.package)]
            if action == "get_live_categories":
                return live_categories(channels)
            return live_streams(channels, username, password, base_url, params.get("category_id"))

        if action in ("get_short_epg", "get_simple_data_table"):
            return await self._epg(db, params, simple=action == "get_simple_data_table")

        if action in ("get_vod_categories", "get_vod_streams", "get_series_categories", "get_series"):
            return []
        if action == "get_vod_info":
            return {"info": {}, "movie_data": {"stream_id": params.get("vod_id") or "0"}}
        if action == "get_series_info":
            return {"info": {}, "episodes": {}}

        active = await repository.count_active_streams(db, profile.id)
        return account_info(entitlement, password, active, base_url)

    async def _epg(self, db: AsyncSession, params: Mapping[str, str], simple: bool) -> Dict[str, Any]:
        stream_id = params.get("stream_id") or ""
        limit_raw = params.get("limit") or str(DEFAULT_EPG_LIMIT)
        limit = int(limit_raw) if limit_raw.isdigit() else DEFAULT_EPG_LIMIT
        if not stream_id.isdigit():
            return {"epg_listings": []}
        channel = await resolve_numeric_id(db, int(stream_id))
        if channel is None:
            return {"epg_listings": []}
        programmes = await repository.list_programmes(db, channel_id=channel.id, limit=limit)
        return epg_listings(programmes, simple=simple)
