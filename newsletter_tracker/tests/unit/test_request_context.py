from __future__ import annotations

import pytest
from starlette.requests import Request

from newsletter_tracker.services.request_context import client_ip, parse_user_agent, request_origin


def _make_request(headers: dict[str, str], client: tuple[str, int] | None = ("198.51.100.7", 5000)) -> Request:
    # Construct a minimal ASGI scope for header parsing tests.
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/newsletter/signup",
        "scheme": "http",
        "server": ("test", 80),
        "client": client,
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()],
        "query_string": b"",
    }
    return Request(scope)


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
            ("desktop", "Edge", "Windows"),
        ),
        (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36",
            ("desktop", "Chrome", "macOS"),
        ),
        (
            "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) "
            "Version/17.0 Mobile/15E148 Safari/604.1",
            ("tablet", "Safari", "iOS"),
        ),
        (
            "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Mobile Safari/537.36",
            ("mobile", "Chrome", "Android"),
        ),
        (
            "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
            ("desktop", "Firefox", "Linux"),
        ),
        ("curl/8.4.0", ("desktop", "unknown", "unknown")),
    ],
)
def test_parse_user_agent(user_agent: str, expected: tuple[str, str, str]) -> None:
    info = parse_user_agent(user_agent)
    assert (info.device_type, info.browser, info.operating_system) == expected


def test_parse_user_agent_missing() -> None:
    info = parse_user_agent(None)
    assert (info.device_type, info.browser, info.operating_system) == ("unknown", "unknown", "unknown")


def test_client_ip_prefers_first_forwarded_hop() -> None:
    request = _make_request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "X-Real-IP": "10.0.0.2"})
    assert client_ip(request) == "203.0.113.9"


def test_client_ip_falls_back_through_headers_to_socket() -> None:
    assert client_ip(_make_request({"CF-Connecting-IP": "203.0.113.10"})) == "203.0.113.10"
    assert client_ip(_make_request({}, client=("::ffff:192.0.2.4", 1))) == "192.0.2.4"
    assert client_ip(_make_request({}, client=("::1", 1))) == "127.0.0.1"
    assert client_ip(_make_request({}, client=None)) is None


def test_request_origin_reads_user_agent_and_referrer() -> None:
    origin = request_origin(_make_request({"User-Agent": "curl/8.4.0", "Referer": "https://google.com/"}))
    assert origin.ip_address == "198.51.100.7"
    assert origin.user_agent == "curl/8.4.0"
    assert origin.referrer == "https://google.com/"
    assert request_origin(None).ip_address is None
