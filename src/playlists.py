"""
Catalog exports: the bulk M3U playlist and the XMLTV guide.
"""

import re
import logging
import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlencode

from models import PlaylistFormat
from orm import Channel, EpgProgramme, as_utc

logger = logging.getLogger(__name__)

M3U_CONTENT_TYPE = "application/x-mpegurl"
XMLTV_TIME_FORMAT = "%Y%m%d%H%M%S +0000"


def tvg_id_for(channel: Channel) -> str:
    return channel.epg_id or re.sub(r'\s+', '.', channel.name)


def _extinf(channel: Channel, tvg_id: str, display_name: str) -> str:
    logo = channel.logo_url or ''
    group = channel.category or 'General'
    return (f'#EXTINF:-1 tvg-id="{tvg_id}" tvg-name="{display_name}" '
            f'tvg-logo="{logo}" group-title="{group}",{display_name}')


def build_playlist(
    channels: Iterable[Channel],
    username: str,
    password: str,
    fmt: PlaylistFormat,
    base_url: str,
) -> str:
    """Multi-channel M3U with one entry per channel and requested format.

    Channels without upstream sources are skipped.
    """
    lines: List[str] = ['#EXTM3U']
    count = 0
    for channel in channels:
        if not channel.upstream_sources:
            continue
        count += 1
        quality = channel.upstream_sources[0].get('quality') or 'HD'
        tvg_id = tvg_id_for(channel)

        if fmt in (PlaylistFormat.HLS, PlaylistFormat.BOTH):
            query = urlencode({"username": username, "password": password,
                               "quality": quality, "format": "hls"})
            lines.append(_extinf(channel, tvg_id, channel.name))
            lines.append(f"{base_url}/live/{channel.id}.m3u8?{query}")

        if fmt in (PlaylistFormat.MPEGTS, PlaylistFormat.BOTH):
            query = urlencode({"username": username, "password": password,
                               "quality": quality, "format": "mpegts"})
            suffix = " (MPEGTS)" if fmt == PlaylistFormat.BOTH else ""
            lines.append(_extinf(channel, tvg_id, f"{channel.name}{suffix}"))
            lines.append(f"{base_url}/live/{channel.id}.ts?{query}")

    logger.info(f"Generated {fmt.value} playlist for {username} with {count} channels")
    return "\n".join(lines) + "\n"


def playlist_headers(username: str) -> Dict[str, str]:
    return {
        "Content-Disposition": f'attachment; filename="{username}_playlist.m3u"',
        "Cache-Control": "no-cache, no-store, must-revalidate",
    }


def build_xmltv(
    channels: Iterable[Channel],
    programmes: Iterable[EpgProgramme],
    generator: Optional[str] = None,
) -> str:
    """XMLTV document for the given channels and their programmes."""
    root = ET.Element("tv")
    if generator:
        root.set("generator-info-name", generator)

    xml_ids: Dict[str, str] = {}
    for channel in channels:
        xml_id = channel.epg_id or channel.id
        xml_ids[channel.id] = xml_id
        channel_ele = ET.SubElement(root, "channel", id=xml_id)
        ET.SubElement(channel_ele, "display-name").text = channel.name
        if channel.logo_url:
            ET.SubElement(channel_ele, "icon", src=channel.logo_url)

    for programme in programmes:
        xml_id = xml_ids.get(programme.channel_id)
        if xml_id is None:
            continue
        prog_ele = ET.SubElement(
            root,
            "programme",
            start=as_utc(programme.start_time).strftime(XMLTV_TIME_FORMAT),
            stop=as_utc(programme.end_time).strftime(XMLTV_TIME_FORMAT),
            channel=xml_id,
        )
        ET.SubElement(prog_ele, "title").text = programme.title
        if programme.description:
            ET.SubElement(prog_ele, "desc").text = programme.description
        if programme.category:
            ET.SubElement(prog_ele, "category").text = programme.category

    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n<!DOCTYPE tv SYSTEM "xmltv.dtd">\n' + body
