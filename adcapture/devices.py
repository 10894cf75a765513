"""Device emulation profiles applied to capture sessions."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from adcapture.errors import DirectiveParseError

_IOS_SAFARI_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
_ANDROID_CHROME_UA = (
    "Mozilla/5.0 (Linux; Android 13; SM-S911B) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/112.0.0.0 Mobile Safari/537.36"
)
_IPAD_SAFARI_UA = (
    "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
_DESKTOP_CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True, slots=True)
class DeviceProfile:
    """Viewport, scale and user agent for one emulated device."""

    name: str
    width: int
    height: int
    device_scale_factor: int
    is_mobile: bool
    has_touch: bool
    user_agent: str

    def context_options(self) -> dict[str, Any]:
        """Keyword arguments for ``Browser.new_context``."""

        return {
            "viewport": {"width": self.width, "height": self.height},
            "device_scale_factor": self.device_scale_factor,
            "is_mobile": self.is_mobile,
            "has_touch": self.has_touch,
            "user_agent": self.user_agent,
            "locale": "en-US",
        }


_PROFILES = (
    DeviceProfile("iPhone 14 Pro", 393, 852, 3, True, True, _IOS_SAFARI_UA),
    DeviceProfile("iPhone 14 Pro Landscape", 852, 393, 3, True, True, _IOS_SAFARI_UA),
    DeviceProfile("Samsung Galaxy S23", 360, 780, 3, True, True, _ANDROID_CHROME_UA),
    DeviceProfile("Samsung Galaxy S23 Landscape", 780, 360, 3, True, True, _ANDROID_CHROME_UA),
    DeviceProfile("iPad Pro", 1024, 1366, 2, True, True, _IPAD_SAFARI_UA),
    DeviceProfile("Desktop", 1920, 1080, 1, False, False, _DESKTOP_CHROME_UA),
)

DEVICE_PROFILES: Mapping[str, DeviceProfile] = MappingProxyType({profile.name: profile for profile in _PROFILES})

_DEVICE_TYPE_PROFILES = {
    "android": "Samsung Galaxy S23",
    "ios": "iPhone 14 Pro",
    "desktop": "Desktop",
}


def profile_for(device_type: str) -> DeviceProfile:
    """Resolve ``android``/``ios``/``desktop`` (case-insensitive) to a profile."""

    name = _DEVICE_TYPE_PROFILES.get(device_type.strip().lower())
    if name is None:
        raise DirectiveParseError(f"Unsupported device type: {device_type}")
    return DEVICE_PROFILES[name]
