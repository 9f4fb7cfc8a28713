"""
Device, browser and OS classification from User-Agent headers.

Sessions record a coarse classification captured once at session creation:
device type (for the dashboard device chart and "most used device" on
contact profiles), browser family and OS family. Versions are not kept.

Pattern order matters: Chromium forks before Chrome, Chrome before Safari,
Android before Linux, tablets before phones.
"""

import re
from dataclasses import dataclass
from enum import Enum


class DeviceType(str, Enum):
    """Device category."""
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class UserAgentInfo:
    """Parsed user-agent classification."""
    browser: str = "Unknown"
    os: str = "Unknown"
    device_type: DeviceType = DeviceType.UNKNOWN

    def to_dict(self) -> dict:
        """Convert to column values for storage."""
        return {
            "device_type": self.device_type.value,
            "browser": self.browser,
            "os": self.os,
        }


BROWSER_PATTERNS = [
    (r"Edg(?:e|A|iOS)?/", "Edge"),
    (r"OPR/|Opera", "Opera"),
    (r"SamsungBrowser/", "Samsung Internet"),
    (r"YaBrowser/", "Yandex"),
    (r"Vivaldi/", "Vivaldi"),
    (r"Firefox/|FxiOS/", "Firefox"),
    (r"CriOS/|Chrome/", "Chrome"),
    (r"Chromium/", "Chromium"),
    (r"Version/\d+.*Safari|Safari/", "Safari"),
    (r"MSIE |Trident/", "Internet Explorer"),
    (r"FBAN|FBAV", "Facebook WebView"),
    (r"Instagram", "Instagram WebView"),
]

OS_PATTERNS = [
    (r"iPhone|iPod", "iOS"),
    (r"iPad", "iPadOS"),
    (r"Macintosh|Mac OS X", "macOS"),
    (r"Android", "Android"),
    (r"Windows", "Windows"),
    (r"CrOS", "Chrome OS"),
    (r"Linux", "Linux"),
]

TABLET_PATTERN = re.compile(r"iPad|Tablet|Kindle|Silk|PlayBook|Android(?!.*Mobile)", re.IGNORECASE)
MOBILE_PATTERN = re.compile(
    r"Mobile|iPhone|iPod|BlackBerry|IEMobile|Opera Mini|Opera Mobi|Windows Phone",
    re.IGNORECASE,
)


def _first_match(ua: str, patterns: list[tuple[str, str]]) -> str:
    for pattern, name in patterns:
        if re.search(pattern, ua, re.IGNORECASE):
            return name
    return "Unknown"


def _detect_device_type(ua: str) -> DeviceType:
    # Tablets first: iPad and Android tablets can also carry "Mobile"
    if TABLET_PATTERN.search(ua):
        return DeviceType.TABLET
    if MOBILE_PATTERN.search(ua):
        return DeviceType.MOBILE
    if any(token in ua for token in ("Windows", "Macintosh", "X11", "CrOS", "Linux")):
        return DeviceType.DESKTOP
    return DeviceType.UNKNOWN


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    """
    Classify a user-agent string.

    Examples:
        >>> parse_user_agent("Mozilla/5.0 (Windows NT 10.0; Win64; x64) ... Chrome/120.0.0.0 Safari/537.36")
        UserAgentInfo(browser='Chrome', os='Windows', device_type=<DeviceType.DESKTOP>)

        >>> parse_user_agent("")
        UserAgentInfo(browser='Unknown', os='Unknown', device_type=<DeviceType.UNKNOWN>)
    """
    if not user_agent or not user_agent.strip():
        return UserAgentInfo()

    return UserAgentInfo(
        browser=_first_match(user_agent, BROWSER_PATTERNS),
        os=_first_match(user_agent, OS_PATTERNS),
        device_type=_detect_device_type(user_agent),
    )
