from __future__ import annotations

import re
from dataclasses import dataclass

from fastapi import Request


UNKNOWN = "unknown"

# Ordered: Edge and Opera carry "Chrome" in their UA, Chrome carries "Safari".
_BROWSERS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Edge", re.compile(r"Edg(e|A|iOS)?/")),
    ("Opera", re.compile(r"OPR/|Opera")),
    ("Chrome", re.compile(r"Chrome/|CriOS/")),
    ("Firefox", re.compile(r"Firefox/|FxiOS/")),
    ("Safari", re.compile(r"Safari/")),
)
# Ordered: iOS UAs say "like Mac OS X", Android UAs say "Linux".
_SYSTEMS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("iOS", re.compile(r"iPhone|iPad|iPod|iOS")),
    ("Android", re.compile(r"Android")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Mac")),
    ("Linux", re.compile(r"Linux")),
)
_MOBILE = re.compile(r"Mobile|Android|iPhone|iPad|iPod")
_TABLET = re.compile(r"iPad|Tablet")


@dataclass(frozen=True)
class UserAgentInfo:
    device_type: str = UNKNOWN
    browser: str = UNKNOWN
    operating_system: str = UNKNOWN


@dataclass(frozen=True)
class RequestOrigin:
    ip_address: str | None
    user_agent: str | None
    referrer: str | None


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    if not user_agent:
        return UserAgentInfo()
    if _MOBILE.search(user_agent):
        device_type = "tablet" if _TABLET.search(user_agent) else "mobile"
    else:
        device_type = "desktop"
    browser = next((name for name, pattern in _BROWSERS if pattern.search(user_agent)), UNKNOWN)
    system = next((name for name, pattern in _SYSTEMS if pattern.search(user_agent)), UNKNOWN)
    return UserAgentInfo(device_type=device_type, browser=browser, operating_system=system)


def _clean_ip(raw: str | None) -> str | None:
    if not raw:
        return None
    # Proxies append hops; the first entry is the original client.
    ip = raw.split(",")[0].strip()
    if ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]
    if ip == "::1":
        ip = "127.0.0.1"
    return ip or None


def client_ip(request: Request) -> str | None:
    for header in ("x-forwarded-for", "x-real-ip", "cf-connecting-ip"):
        ip = _clean_ip(request.headers.get(header))
        if ip:
            return ip
    return _clean_ip(request.client.host if request.client else None)


def request_origin(request: Request | None) -> RequestOrigin:
    # Client hints recorded on the subscriber row at signup.
    if request is None:
        return RequestOrigin(ip_address=None, user_agent=None, referrer=None)
    return RequestOrigin(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
    )
