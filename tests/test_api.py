"""
HTTP surface tests: authentication, session control, delivery and operator endpoints
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import asyncio
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from config import settings
from db import create_engine, create_session_factory
from orm import Subscription, utcnow
from upstream import derive_numeric_id
from seed import ADMIN_PASSWORD, TS_SOURCE, USER_PASSWORD, fake_ffmpeg, seed_catalog, sqlite_url

OPERATOR_TOKEN = "operator-token"
MEDIA_PLAYLIST = "#EXTM3U\n#EXT-X-TARGETDURATION:6\n#EXTINF:6.0,\nseg1.ts\n"


async def _expire_subscriptions(user_id):
    engine = create_engine(settings.DATABASE_URL)
    try:
        async with create_session_factory(engine)() as db:
            await db.execute(update(Subscription).where(Subscription.user_id == user_id)
                             .values(end_date=utcnow() - timedelta(minutes=1)))
            await db.commit()
    finally:
        await engine.dispose()


class Gateway:
    def __init__(self, client, ids, upstream):
        self.client = client
        self.ids = ids
        self.upstream = upstream

    def token(self, username="alice", password=USER_PASSWORD):
        response = self.client.post("/auth/token", json={"username": username, "password": password})
        assert response.status_code == 200
        return response.json()["access_token"]

    def bearer(self, username="alice", password=USER_PASSWORD):
        return {"Authorization": f"Bearer {self.token(username, password)}"}

    def control(self, headers, action, channel_id, **extra):
        return self.client.post("/session-control", headers=headers,
                                json={"action": action, "channel_id": channel_id, **extra})


@pytest.fixture
def gateway(tmp_path, monkeypatch):
    """Running app over a seeded sqlite database, a mocked upstream and the fake transcoder"""
    url = sqlite_url(tmp_path)
    ids = asyncio.run(seed_catalog(url))

    monkeypatch.setattr(settings, "DATABASE_URL", url)
    monkeypatch.setattr(settings, "FFMPEG_PATH", fake_ffmpeg(tmp_path))
    monkeypatch.setattr(settings, "TRANSCODE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "HLS_OUTPUT_DIR", str(tmp_path / "hls"))
    monkeypatch.setattr(settings, "STOP_GRACE_SECONDS", 2.0)
    monkeypatch.setattr(settings, "API_TOKEN", OPERATOR_TOKEN)
    monkeypatch.setattr(settings, "PUBLIC_URL", None)
    monkeypatch.setattr(settings, "REDIS_ENABLED", False)
    monkeypatch.setattr(settings, "SERVER_MASTER_KEY", "master-secret")

    upstream = {"status": 200}

    def handler(request):
        return httpx.Response(upstream["status"], text=MEDIA_PLAYLIST)

    from api import app
    with TestClient(app) as client:
        app.state.normalizer.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        yield Gateway(client, ids, upstream)


class TestOperatorAuthentication:
    """Operator endpoints need the API token or an admin bearer token"""

    def test_health_requires_token(self, gateway):
        response = gateway.client.get("/health")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "authentication_failed"
        assert "API token required" in body["message"]

    def test_health_with_header_token(self, gateway):
        response = gateway.client.get("/health", headers={"X-API-Token": OPERATOR_TOKEN})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] is True
        assert body["registry"] == "memory"
        assert body["active_processes"] == 0

    def test_health_with_query_token(self, gateway):
        assert gateway.client.get(f"/health?api_token={OPERATOR_TOKEN}").status_code == 200

    def test_wrong_token(self, gateway):
        response = gateway.client.get("/health", headers={"X-API-Token": "nope"})
        assert response.status_code == 403

    def test_admin_bearer_accepted(self, gateway):
        headers = gateway.bearer("admin", ADMIN_PASSWORD)
        assert gateway.client.get("/health", headers=headers).status_code == 200

    def test_subscriber_bearer_rejected(self, gateway):
        response = gateway.client.get("/health", headers=gateway.bearer())
        assert response.status_code == 403
        assert response.json()["message"] == "Admin access required"


class TestSessionControl:
    """start / stop / status through the HTTP surface"""

    def test_requires_bearer_token(self, gateway):
        response = gateway.control({}, "status", gateway.ids["news"])
        assert response.status_code == 401

    def test_bad_login(self, gateway):
        response = gateway.client.post("/auth/token", json={"username": "alice", "password": "bad"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials"

    def test_relay_start_status_stop(self, gateway):
        headers = gateway.bearer()
        news = gateway.ids["news"]

        started = gateway.control(headers, "start", news)
        assert started.status_code == 200
        body = started.json()
        assert body["success"] is True
        assert body["stream_url"] == f"http://testserver/streams/{body['stream_id']}/playlist.m3u8"

        manifest = gateway.client.get(f"/streams/{body['stream_id']}/playlist.m3u8")
        assert manifest.status_code == 200
        assert manifest.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert "http://upstream.test/live/news/seg1.ts" in manifest.text

        status = gateway.control(headers, "status", news).json()
        assert status["active"] is True
        assert status["stream_id"] == body["stream_id"]
        assert status["state"] == "running"
        assert status["channel_name"] == "News One"

        over_limit = gateway.control(headers, "start", gateway.ids["sports"])
        assert over_limit.status_code == 429
        assert over_limit.json()["error"] == "concurrency_limit"

        stopped = gateway.control(headers, "stop", news)
        assert stopped.status_code == 200
        assert stopped.json()["stream_id"] == body["stream_id"]

        assert gateway.control(headers, "stop", news).status_code == 404
        status = gateway.control(headers, "status", news)
        assert status.status_code == 200
        assert status.json()["active"] is False
        assert gateway.client.get(f"/streams/{body['stream_id']}/playlist.m3u8").status_code == 404

    def test_relay_playlist_stops_when_subscription_lapses(self, gateway):
        started = gateway.control(gateway.bearer(), "start", gateway.ids["news"])
        assert started.status_code == 200
        playlist_url = f"/streams/{started.json()['stream_id']}/playlist.m3u8"
        assert gateway.client.get(playlist_url).status_code == 200

        asyncio.run(_expire_subscriptions(gateway.ids["alice"]))

        response = gateway.client.get(playlist_url)
        assert response.status_code == 403
        assert response.json()["message"] == "No active subscription"

    def test_transcode_start_serves_output(self, gateway):
        headers = gateway.bearer()
        started = gateway.control(headers, "start", gateway.ids["sports"], quality="HD")
        assert started.status_code == 200
        stream_id = started.json()["stream_id"]
        assert started.json()["stream_url"] == f"http://testserver/hls/{stream_id}/playlist.m3u8"

        assert gateway.client.get(f"/hls/{stream_id}/playlist.m3u8").status_code == 404
        with open(os.path.join(settings.HLS_OUTPUT_DIR, stream_id, "playlist.m3u8"), "w") as f:
            f.write("#EXTM3U\n")
        served = gateway.client.get(f"/hls/{stream_id}/playlist.m3u8")
        assert served.status_code == 200
        assert served.text == "#EXTM3U\n"

        logs = gateway.client.get(f"/streams/{stream_id}/logs", headers={"X-API-Token": OPERATOR_TOKEN})
        assert logs.status_code == 200

        health = gateway.client.get("/health", headers={"X-API-Token": OPERATOR_TOKEN}).json()
        assert health["active_processes"] == 1

        assert gateway.control(headers, "stop", gateway.ids["sports"]).status_code == 200

    def test_numeric_channel_reference(self, gateway):
        headers = gateway.bearer()
        numeric = str(derive_numeric_id(gateway.ids["movies"]))
        status = gateway.control(headers, "status", numeric)
        assert status.status_code == 200
        assert status.json()["channel_name"] == "Movies"

    def test_rejections(self, gateway):
        assert gateway.control(gateway.bearer("bob"), "start", gateway.ids["news"]).status_code == 403
        assert gateway.control(gateway.bearer(), "start", "no-such-channel").status_code == 404
        assert gateway.control(gateway.bearer(), "start", gateway.ids["premium_only"]).status_code == 403

    def test_upstream_failure(self, gateway):
        gateway.upstream["status"] = 500
        response = gateway.control(gateway.bearer(), "start", gateway.ids["news"])
        assert response.status_code == 503
        assert response.json()["upstream_url"] == "http://upstream.test/live/news/index.m3u8"

    def test_invalid_body(self, gateway):
        response = gateway.control(gateway.bearer(), "restart", gateway.ids["news"])
        assert response.status_code == 422


class TestLiveDelivery:
    """Credential-in-URL playlist delivery"""

    def test_path_credentials(self, gateway):
        response = gateway.client.get(f"/live/alice/{USER_PASSWORD}/{gateway.ids['news']}.m3u8")
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert "http://upstream.test/live/news/seg1.ts" in response.text

    def test_query_credentials_and_numeric_ref(self, gateway):
        numeric = derive_numeric_id(gateway.ids["sports"])
        response = gateway.client.get(f"/live/{numeric}.m3u8",
                                      params={"username": "alice", "password": USER_PASSWORD})
        assert response.status_code == 200
        assert TS_SOURCE in response.text
        assert response.text.count("#EXTINF") == 1

    def test_failures(self, gateway):
        news = gateway.ids["news"]
        assert gateway.client.get(f"/live/alice/wrong/{news}.m3u8").status_code == 401
        assert gateway.client.get(f"/live/{news}.m3u8").status_code == 401
        assert gateway.client.get(f"/live/bob/{USER_PASSWORD}/{news}.m3u8").status_code == 403
        assert gateway.client.get(f"/live/alice/{USER_PASSWORD}/nothing.m3u8").status_code == 404

        gateway.upstream["status"] = 503
        response = gateway.client.get(f"/live/alice/{USER_PASSWORD}/{news}.m3u8")
        assert response.status_code == 503
        assert response.json()["upstream_url"] == "http://upstream.test/live/news/index.m3u8"

    def test_transport_stream_redirect(self, gateway):
        response = gateway.client.get(f"/live/alice/{USER_PASSWORD}/{gateway.ids['sports']}.ts",
                                      follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == TS_SOURCE


class TestCatalogEndpoints:
    """Playlist export, Xtream API and XMLTV"""

    def test_playlist_export(self, gateway):
        response = gateway.client.get(f"/playlist/alice/{USER_PASSWORD}", params={"format": "both"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-mpegurl")
        assert 'filename="alice_playlist.m3u"' in response.headers["content-disposition"]
        assert response.text.startswith("#EXTM3U")
        assert "(MPEGTS)" in response.text
        assert "Premium Cinema" not in response.text
        assert "No Source" not in response.text

    def test_playlist_errors_are_plain_text(self, gateway):
        response = gateway.client.get("/playlist", params={"username": "alice", "password": "bad"})
        assert response.status_code == 401
        assert response.text == "Invalid credentials"

        response = gateway.client.get(f"/playlist/alice/{USER_PASSWORD}", params={"format": "flv"})
        assert response.status_code == 400

        response = gateway.client.get(f"/playlist/bob/{USER_PASSWORD}")
        assert response.status_code == 403
        assert response.text == "No active subscription"

    def test_get_php_alias(self, gateway):
        response = gateway.client.get("/get.php", params={
            "username": "alice", "password": USER_PASSWORD, "type": "m3u_plus", "output": "ts"})
        assert response.status_code == 200
        urls = [line for line in response.text.splitlines() if not line.startswith("#")]
        assert urls and all(".ts?" in url for url in urls)

    def test_xtream(self, gateway):
        response = gateway.client.get("/player_api.php", params={"username": "alice", "password": "bad"})
        assert response.status_code == 401
        assert response.json() == {"user_info": {"auth": 0, "message": "Invalid credentials"}}

        info = gateway.client.get("/player_api.php", params={"username": "alice", "password": USER_PASSWORD})
        assert info.status_code == 200
        assert info.json()["user_info"]["auth"] == 1

        streams = gateway.client.get("/xtream-api", params={
            "username": "alice", "password": USER_PASSWORD, "action": "get_live_streams"}).json()
        news = next(s for s in streams if s["name"] == "News One")
        assert news["stream_id"] == derive_numeric_id(gateway.ids["news"])
        assert news["direct_source"].startswith(f"http://testserver/live/{gateway.ids['news']}.m3u8?")

    def test_xmltv(self, gateway):
        for path in ("/xmltv.php", "/epg.xml"):
            response = gateway.client.get(path, params={"username": "alice", "password": USER_PASSWORD})
            assert response.status_code == 200
            assert 'generator-info-name="IPTV Stream Gateway"' in response.text
            assert 'id="news.one"' in response.text
            assert "Morning News" in response.text
            assert "Overnight" not in response.text

        assert gateway.client.get("/epg.xml").status_code == 401


class TestOperatorEndpoints:
    """Remote execution, stream administration and webhooks"""

    def test_server_actions(self, gateway):
        server_id = gateway.ids["remote_server"]
        payload = {"action": "store", "server_id": server_id,
                   "credentials": {"username": "ops", "private_key": "KEY"}}

        denied = gateway.client.post("/admin/servers", json=payload, headers=gateway.bearer())
        assert denied.status_code == 403

        admin = gateway.bearer("admin", ADMIN_PASSWORD)
        stored = gateway.client.post("/admin/servers", json=payload, headers=admin)
        assert stored.status_code == 200
        assert stored.json()["success"] is True

        retrieved = gateway.client.post("/admin/servers", headers=admin,
                                        json={"action": "retrieve", "server_id": server_id})
        assert retrieved.json()["data"]["private_key"] == "KEY"

        rejected = gateway.client.post("/admin/servers", headers=admin, json={
            "action": "execute_command", "server_id": server_id, "command": "rm -rf /"})
        assert rejected.status_code == 403
        assert rejected.json()["error"] == "command_not_allowed"

    def test_stream_administration(self, gateway):
        token = {"X-API-Token": OPERATOR_TOKEN}
        logs = gateway.client.get("/streams/unknown/logs", headers=token)
        assert logs.text == "No logs available"
        assert gateway.client.post("/streams/unknown/stop", headers=token).status_code == 404

        started = gateway.control(gateway.bearer(), "start", gateway.ids["news"]).json()
        stopped = gateway.client.post(f"/streams/{started['stream_id']}/stop", headers=token)
        assert stopped.status_code == 200
        status = gateway.control(gateway.bearer(), "status", gateway.ids["news"]).json()
        assert status["active"] is False

    def test_webhooks(self, gateway):
        token = {"X-API-Token": OPERATOR_TOKEN}
        created = gateway.client.post("/webhooks", headers=token, json={
            "url": "http://hooks.example.com/iptv", "events": ["stream_started", "stream_failed"]})
        assert created.status_code == 200
        assert created.json()["events"] == ["stream_started", "stream_failed"]

        listed = gateway.client.get("/webhooks", headers=token).json()["webhooks"]
        assert [w["url"] for w in listed] == ["http://hooks.example.com/iptv"]

        removed = gateway.client.delete("/webhooks", headers=token,
                                        params={"webhook_url": "http://hooks.example.com/iptv"})
        assert removed.status_code == 200
        assert gateway.client.delete("/webhooks", headers=token,
                                     params={"webhook_url": "http://hooks.example.com/iptv"}).status_code == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
