"""
Tests for the request helpers used by the HTTP layer: client identity,
bearer token parsing and the public base URL put into delivery links.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from unittest.mock import Mock
from fastapi import Request

from config import settings
from api import bearer_token, detect_https_from_headers, get_client_info, get_public_base_url


def make_request(headers=None, client_host="10.0.0.1", scheme="http", netloc="gw.local:8085"):
    request = Mock(spec=Request)
    request.headers = headers or {}
    request.client = Mock(host=client_host) if client_host else None
    request.url = Mock(scheme=scheme, netloc=netloc)
    return request


class TestClientInfo:
    """Client IP and user agent recorded on sessions and audit rows"""

    @pytest.mark.parametrize("headers, expected", [
        ({"x-forwarded-for": "192.168.1.100"}, "192.168.1.100"),
        ({"x-forwarded-for": "192.168.1.100, 10.0.0.5, 10.0.0.6"}, "192.168.1.100"),
        ({"x-forwarded-for": "  192.168.1.100  ,  10.0.0.5  "}, "192.168.1.100"),
        ({"x-forwarded-for": "2001:db8:85a3::8a2e:370:7334"}, "2001:db8:85a3::8a2e:370:7334"),
        ({"x-real-ip": "203.0.113.9"}, "203.0.113.9"),
        ({"x-forwarded-for": "192.168.1.100", "x-real-ip": "203.0.113.9"}, "192.168.1.100"),
        ({"x-forwarded-for": ""}, "10.0.0.1"),
        ({}, "10.0.0.1"),
    ])
    def test_ip_precedence(self, headers, expected):
        assert get_client_info(make_request(headers))["ip_address"] == expected

    def test_no_peer_and_no_headers(self):
        info = get_client_info(make_request(client_host=None))
        assert info["ip_address"] == "unknown"
        assert info["user_agent"] == "unknown"

    def test_user_agent(self):
        info = get_client_info(make_request({"user-agent": "VLC/3.0.20 LibVLC/3.0.20"}))
        assert info["user_agent"] == "VLC/3.0.20 LibVLC/3.0.20"


class TestBearerToken:
    """Authorization header parsing"""

    @pytest.mark.parametrize("header, expected", [
        ("Bearer abc123", "abc123"),
        ("bearer   abc123  ", "abc123"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ])
    def test_parsing(self, header, expected):
        assert bearer_token(header) == expected


class TestPublicBaseUrl:
    """Base URL for stream_url, playlists and Xtream direct_source"""

    @pytest.fixture(autouse=True)
    def _defaults(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_URL", None)
        monkeypatch.setattr(settings, "ROOT_PATH", "")
        monkeypatch.setattr(settings, "PORT", 8085)

    @pytest.mark.parametrize("headers", [
        {"x-forwarded-proto": "https"},
        {"x-forwarded-scheme": "HTTPS"},
        {"x-forwarded-ssl": "on"},
        {"front-end-https": "on"},
        {"forwarded": "for=192.0.2.60;proto=https;by=203.0.113.43"},
        {"x-forwarded-port": "443"},
    ])
    def test_https_detection(self, headers):
        assert detect_https_from_headers(make_request(headers)) is True

    def test_plain_http(self):
        assert detect_https_from_headers(make_request({"x-forwarded-proto": "http"})) is False

    def test_request_url_without_public_url(self):
        assert get_public_base_url(make_request()) == "http://gw.local:8085"
        assert get_public_base_url(make_request({"x-forwarded-proto": "https"})) == "https://gw.local:8085"

    def test_public_host_gets_service_port(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_URL", "iptv.example.com")
        assert get_public_base_url(make_request()) == "http://iptv.example.com:8085"

    def test_https_proxy_drops_internal_port(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_URL", "http://iptv.example.com")
        request = make_request({"x-forwarded-proto": "https"})
        assert get_public_base_url(request) == "https://iptv.example.com"

    def test_explicit_port_is_kept(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_URL", "https://iptv.example.com:9443/")
        assert get_public_base_url(make_request()) == "https://iptv.example.com:9443"

    def test_root_path_appended_once(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_URL", "http://iptv.example.com:9000/gateway")
        monkeypatch.setattr(settings, "ROOT_PATH", "/gateway")
        assert get_public_base_url(make_request()) == "http://iptv.example.com:9000/gateway"

        monkeypatch.setattr(settings, "PUBLIC_URL", None)
        assert get_public_base_url(make_request()) == "http://gw.local:8085/gateway"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
