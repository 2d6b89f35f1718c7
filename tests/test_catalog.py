"""
Tests for the bulk playlist, XMLTV export and the Xtream-compatible API
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import base64
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone

import pytest

from db import create_engine, create_session_factory
from entitlement import EntitlementGate
from errors import AuthenticationError, AuthorizationError
from models import PlaylistFormat
from orm import Channel, EpgProgramme
from playlists import build_playlist, build_xmltv, playlist_headers, tvg_id_for
from upstream import derive_numeric_id
from xtream import XtreamAPI, category_names, epg_listings, live_categories, live_streams, xtream_error_body
from seed import USER_PASSWORD, seed_catalog, sqlite_url

BASE_URL = "http://gw.test"


def make_channels():
    return [
        Channel(id="11111111-0000-0000-0000-000000000001", name="News One", category="News",
                epg_id="news.one", logo_url="http://logos.test/news.png",
                upstream_sources=[{"url": "http://u/news.m3u8", "quality": "FHD"}]),
        Channel(id="22222222-0000-0000-0000-000000000002", name="Sports Live", category="Sports",
                upstream_sources=[{"url": "http://u/sports.ts"}]),
        Channel(id="33333333-0000-0000-0000-000000000003", name="Empty", category="News",
                upstream_sources=[]),
    ]


class TestBulkPlaylist:
    """Multi-channel M3U export"""

    def test_hls_playlist(self):
        content = build_playlist(make_channels(), "alice", "s3cret", PlaylistFormat.HLS, BASE_URL)
        lines = content.splitlines()

        assert lines[0] == "#EXTM3U"
        assert content.endswith("\n")
        assert lines[1] == ('#EXTINF:-1 tvg-id="news.one" tvg-name="News One" '
                            'tvg-logo="http://logos.test/news.png" group-title="News",News One')
        assert lines[2] == (f"{BASE_URL}/live/11111111-0000-0000-0000-000000000001.m3u8"
                            "?username=alice&password=s3cret&quality=FHD&format=hls")
        assert 'tvg-id="Sports.Live"' in lines[3]
        assert "quality=HD" in lines[4]
        # Channels without sources are skipped
        assert "Empty" not in content
        assert len(lines) == 5

    def test_mpegts_playlist(self):
        content = build_playlist(make_channels(), "alice", "pw", PlaylistFormat.MPEGTS, BASE_URL)
        urls = [line for line in content.splitlines() if not line.startswith("#")]
        assert all(".ts?" in url and "format=mpegts" in url for url in urls)
        assert "(MPEGTS)" not in content

    def test_both_formats(self):
        content = build_playlist(make_channels(), "alice", "pw", PlaylistFormat.BOTH, BASE_URL)
        lines = content.splitlines()
        assert len(lines) == 9
        assert lines[3].endswith(",News One (MPEGTS)")
        assert ".m3u8?" in lines[2] and ".ts?" in lines[4]

    def test_credentials_are_url_encoded(self):
        content = build_playlist(make_channels()[:1], "a b", "p&w", PlaylistFormat.HLS, BASE_URL)
        assert "username=a+b&password=p%26w" in content

    def test_headers(self):
        headers = playlist_headers("alice")
        assert headers["Content-Disposition"] == 'attachment; filename="alice_playlist.m3u"'

    def test_tvg_id_fallback(self):
        assert tvg_id_for(Channel(name="BBC  One HD")) == "BBC.One.HD"


class TestXmltv:
    """XMLTV guide export"""

    def test_document(self):
        channels = make_channels()
        start = datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc)
        programmes = [
            EpgProgramme(channel_id=channels[0].id, title="Evening News", description="Daily",
                         category="News", start_time=start, end_time=start + timedelta(minutes=30)),
            EpgProgramme(channel_id="unknown", title="Orphan", start_time=start, end_time=start),
        ]
        content = build_xmltv(channels, programmes, generator="IPTV Stream Gateway")

        assert content.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        root = ET.fromstring(content.split("\n", 2)[2])
        assert root.get("generator-info-name") == "IPTV Stream Gateway"
        channel_ids = [c.get("id") for c in root.findall("channel")]
        assert channel_ids[0] == "news.one"
        assert channel_ids[1] == channels[1].id

        programme_elements = root.findall("programme")
        assert len(programme_elements) == 1
        assert programme_elements[0].get("start") == "20260501180000 +0000"
        assert programme_elements[0].get("stop") == "20260501183000 +0000"
        assert programme_elements[0].get("channel") == "news.one"
        assert programme_elements[0].findtext("title") == "Evening News"


class TestXtreamShapes:
    """Response payloads expected by Xtream player software"""

    def test_categories_sorted_with_one_based_ids(self):
        channels = make_channels()
        assert category_names(channels) == ["News", "Sports"]
        assert live_categories(channels) == [
            {"category_id": "1", "category_name": "News", "parent_id": 0},
            {"category_id": "2", "category_name": "Sports", "parent_id": 0},
        ]

    def test_live_streams(self):
        streams = live_streams(make_channels(), "alice", "pw", BASE_URL)
        news = streams[0]
        assert news["stream_id"] == 0x11111111
        assert news["stream_type"] == "live"
        assert news["category_id"] == "1"
        assert news["epg_channel_id"] == "news.one"
        assert news["direct_source"] == (
            f"{BASE_URL}/live/11111111-0000-0000-0000-000000000001.m3u8?username=alice&password=pw")

    def test_live_streams_by_category(self):
        streams = live_streams(make_channels(), "alice", "pw", BASE_URL, category_id="2")
        assert [s["name"] for s in streams] == ["Sports Live"]

    def test_epg_listing_encoding(self):
        start = datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc)
        programme = EpgProgramme(id="e1", channel_id="c", title="Evening News", description="Daily",
                                 start_time=start, end_time=start + timedelta(hours=1))
        listing = epg_listings([programme], simple=True)["epg_listings"][0]
        assert base64.b64decode(listing["title"]).decode() == "Evening News"
        assert listing["start_timestamp"] == str(int(start.timestamp()))
        assert listing["now_playing"] == 1

    def test_error_body(self):
        assert xtream_error_body("Invalid credentials") == {"user_info": {"auth": 0, "message": "Invalid credentials"}}


class TestXtreamDispatch:
    """player_api.php actions against the catalog"""

    @pytest.mark.asyncio
    async def test_actions(self, tmp_path):
        url = sqlite_url(tmp_path)
        ids = await seed_catalog(url)
        engine = create_engine(url)
        factory = create_session_factory(engine)
        api = XtreamAPI(EntitlementGate())
        try:
            async with factory() as db:
                info = await api.dispatch(db, "alice", USER_PASSWORD, {}, "https://gw.test")
                assert info["user_info"]["auth"] == 1
                assert info["user_info"]["max_connections"] == "1"
                assert info["user_info"]["active_cons"] == "0"
                assert info["server_info"]["server_protocol"] == "https"
                assert info["server_info"]["port"] == "443"

                streams = await api.dispatch(
                    db, "alice", USER_PASSWORD, {"action": "get_live_streams"}, BASE_URL)
                names = {s["name"] for s in streams}
                assert "News One" in names
                # Inactive and other-package channels are hidden
                assert "Retired" not in names
                assert "Premium Cinema" not in names

                categories = await api.dispatch(
                    db, "alice", USER_PASSWORD, {"action": "get_live_categories"}, BASE_URL)
                assert [c["category_name"] for c in categories] == ["Movies", "News", "Sports"]

                epg = await api.dispatch(db, "alice", USER_PASSWORD, {
                    "action": "get_short_epg",
                    "stream_id": str(derive_numeric_id(ids["news"])),
                    "limit": "1",
                }, BASE_URL)
                assert len(epg["epg_listings"]) == 1
                assert base64.b64decode(epg["epg_listings"][0]["title"]).decode() == "Morning News"

                empty = await api.dispatch(db, "alice", USER_PASSWORD,
                                           {"action": "get_short_epg", "stream_id": "abc"}, BASE_URL)
                assert empty == {"epg_listings": []}

                assert await api.dispatch(db, "alice", USER_PASSWORD, {"action": "get_vod_streams"}, BASE_URL) == []
                assert await api.dispatch(db, "alice", USER_PASSWORD, {"action": "get_series"}, BASE_URL) == []
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_rejections(self, tmp_path):
        url = sqlite_url(tmp_path)
        await seed_catalog(url)
        engine = create_engine(url)
        factory = create_session_factory(engine)
        api = XtreamAPI(EntitlementGate())
        try:
            async with factory() as db:
                with pytest.raises(AuthenticationError):
                    await api.dispatch(db, "alice", "wrong", {}, BASE_URL)
                with pytest.raises(AuthorizationError):
                    await api.dispatch(db, "bob", USER_PASSWORD, {}, BASE_URL)
        finally:
            await engine.dispose()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
