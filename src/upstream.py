"""
Upstream source normalization.

Turns a channel's primary upstream source into a playable HLS manifest
without touching session state or the transcoder. Also owns the numeric
channel id used by Xtream-compatible clients.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from urllib.parse import urlparse

import httpx
import m3u8
from sqlalchemy.ext.asyncio import AsyncSession

import repository
from config import settings
from errors import NotFoundError, UpstreamUnavailableError
from models import UpstreamFormat, UpstreamSource
from orm import Channel

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_ABSOLUTE_URL = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*://')
_URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')
_URI_TAGS = ('#EXT-X-KEY', '#EXT-X-MAP', '#EXT-X-MEDIA', '#EXT-X-I-FRAME-STREAM-INF', '#EXT-X-SESSION-KEY')


@dataclass
class NormalizedManifest:
    content: str
    source_format: UpstreamFormat
    upstream_url: str
    content_type: str = HLS_CONTENT_TYPE
    headers: Dict[str, str] = field(default_factory=lambda: dict(NO_STORE_HEADERS))


def single_segment_playlist(target_url: str) -> str:
    """Static one-entry playlist wrapping a direct media URL."""
    return "\n".join([
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        "#EXT-X-TARGETDURATION:10",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-PLAYLIST-TYPE:EVENT",
        "#EXTINF:10.0,",
        target_url,
        "#EXT-X-ENDLIST",
    ])


def base_path(url: str) -> str:
    """Everything up to (not including) the last '/' of the URL path."""
    without_query = url.split('?', 1)[0].split('#', 1)[0]
    return without_query[:without_query.rfind('/')]


def _absolutize(reference: str, source_url: str) -> str:
    if _ABSOLUTE_URL.match(reference):
        return reference
    if reference.startswith('//'):
        return f"{urlparse(source_url).scheme}:{reference}"
    if reference.startswith('/'):
        parsed = urlparse(source_url)
        return f"{parsed.scheme}://{parsed.netloc}{reference}"
    return f"{base_path(source_url)}/{reference}"


def playlist_references(playlist: m3u8.M3U8) -> Set[str]:
    """URIs a parsed playlist points at: segments and their init sections,
    keys, variant and i-frame streams, alternate renditions."""
    refs: Set[str] = set()
    for segment in playlist.segments:
        refs.add(segment.uri)
        if segment.init_section is not None:
            refs.add(segment.init_section.uri)
    refs.update(variant.uri for variant in playlist.playlists)
    refs.update(variant.uri for variant in playlist.iframe_playlists)
    refs.update(media.uri for media in playlist.media)
    refs.update(key.uri for key in playlist.keys if key is not None)
    refs.update(key.uri for key in playlist.session_keys if key is not None)
    refs.discard(None)
    refs.discard("")
    return refs


def rewrite_relative_uris(content: str, source_url: str, references: Optional[Set[str]] = None) -> str:
    """Make relative URIs in an HLS playlist absolute against the source's
    base path, editing only the URI text so every other byte is kept.

    With ``references`` only those URIs are touched; without it every URI
    line and URI attribute is.
    """
    def rewrite(reference: str) -> str:
        if references is not None and reference not in references:
            return reference
        return _absolutize(reference, source_url)

    out: List[str] = []
    for line in content.splitlines(keepends=True):
        stripped = line.strip()
        if not stripped:
            out.append(line)
        elif stripped.startswith('#'):
            if stripped.startswith(_URI_TAGS):
                line = _URI_ATTRIBUTE.sub(lambda m: f'URI="{rewrite(m.group(1))}"', line)
            out.append(line)
        else:
            out.append(line.replace(stripped, rewrite(stripped), 1))
    return "".join(out)


def first_playlist_entry(content: str) -> Optional[str]:
    for line in content.splitlines():
        trimmed = line.strip()
        if trimmed and not trimmed.startswith('#'):
            return trimmed
    return None


def primary_source(channel: Channel) -> UpstreamSource:
    if not channel.upstream_sources:
        raise NotFoundError("Channel has no upstream sources")
    return UpstreamSource(**channel.upstream_sources[0])


def derive_numeric_id(channel_id: str) -> int:
    """First 8 hex digits of the channel id, read as a base-16 integer."""
    return int(channel_id.replace('-', '')[:8], 16)


async def resolve_numeric_id(db: AsyncSession, numeric_id: int) -> Optional[Channel]:
    """Map a numeric id back to an active channel by recomputing the
    derivation over every active channel."""
    matches = []
    for channel in await repository.list_active_channels(db):
        try:
            if derive_numeric_id(channel.id) == numeric_id:
                matches.append(channel)
        except ValueError:
            continue
    if len(matches) > 1:
        logger.warning(
            f"⚠️ Numeric channel id {numeric_id} collides across channels "
            f"{[c.id for c in matches]}; using {matches[0].id}")
    return matches[0] if matches else None


async def resolve_channel_ref(db: AsyncSession, channel_ref: str) -> Optional[Channel]:
    """A channel reference is either the channel id or its numeric id."""
    if channel_ref.isdigit():
        return await resolve_numeric_id(db, int(channel_ref))
    return await repository.get_channel(db, channel_ref)


class UpstreamNormalizer:
    """Produces deliverable manifests from upstream sources."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.UPSTREAM_CONNECT_TIMEOUT,
                read=settings.UPSTREAM_READ_TIMEOUT,
                write=settings.UPSTREAM_CONNECT_TIMEOUT,
                pool=settings.UPSTREAM_CONNECT_TIMEOUT,
            ),
            follow_redirects=True,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def _fetch(self, source: UpstreamSource) -> str:
        auth = (source.username, source.password or "") if source.has_credentials else None
        try:
            response = await self.client.get(
                source.url,
                headers={"User-Agent": settings.UPSTREAM_USER_AGENT},
                auth=auth,
            )
            response.raise_for_status()
            return response.text
        except httpx.HTTPStatusError as e:
            logger.warning(f"Upstream returned {e.response.status_code} for {source.url}")
            raise UpstreamUnavailableError(
                f"Upstream server error: {e.response.status_code}", upstream_url=source.url)
        except httpx.HTTPError as e:
            logger.warning(f"Upstream fetch failed for {source.url}: {e}")
            raise UpstreamUnavailableError(
                f"Upstream fetch failed: {e.__class__.__name__}", upstream_url=source.url)

    async def _resolve_legacy(self, source: UpstreamSource) -> str:
        target = first_playlist_entry(await self._fetch(source))
        if not target:
            raise UpstreamUnavailableError(
                "No valid stream URL found in M3U playlist", upstream_url=source.url)
        return target

    async def normalize(self, source: UpstreamSource) -> NormalizedManifest:
        fmt = source.format
        logger.debug(f"Normalizing {fmt.value} source {source.url}")

        if fmt == UpstreamFormat.RAW_TRANSPORT_STREAM:
            content = single_segment_playlist(source.url)
        elif fmt == UpstreamFormat.LEGACY_PLAYLIST:
            content = single_segment_playlist(await self._resolve_legacy(source))
        elif fmt == UpstreamFormat.HLS_PLAYLIST:
            body = (await self._fetch(source)).lstrip('\ufeff')
            if not body.lstrip().startswith('#EXTM3U'):
                raise UpstreamUnavailableError(
                    "Upstream did not return an HLS playlist", upstream_url=source.url)
            try:
                parsed = m3u8.loads(body, uri=source.url)
            except (ValueError, IndexError, m3u8.ParseError) as e:
                # Malformed tag values: players may still cope, so rewrite line by line
                logger.warning(f"Could not parse playlist from {source.url} ({e}), rewriting line by line")
                content = rewrite_relative_uris(body, source.url)
            else:
                logger.debug(
                    f"Upstream playlist: variant={parsed.is_variant} "
                    f"segments={len(parsed.segments)} variants={len(parsed.playlists)}")
                content = rewrite_relative_uris(body, source.url, playlist_references(parsed))
        else:
            content = single_segment_playlist(source.url)

        return NormalizedManifest(content=content, source_format=fmt, upstream_url=source.url)

    async def direct_target(self, source: UpstreamSource) -> str:
        """URL a client can be redirected to for raw transport-stream playback."""
        if source.format == UpstreamFormat.LEGACY_PLAYLIST:
            return await self._resolve_legacy(source)
        return source.url
