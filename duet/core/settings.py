"""
Call settings, loaded from <config_dir>/calls.json.

Missing or malformed files fall back to defaults; individual bad values are
ignored with a warning so one typo doesn't disable calling.

Example calls.json:
    {
        "ice_servers": [{"urls": ["stun:stun.example.org:3478"]}],
        "negotiation_timeout": 40,
        "microphone_device": "",
        "camera_device": "/dev/video2"
    }
"""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.paths import get_paths

logger = logging.getLogger('duet.settings')

DEFAULT_ICE_SERVERS = [
    {'urls': ['stun:stun.l.google.com:19302']},
    {'urls': ['stun:stun1.l.google.com:19302']},
]

# Accepted negotiation timeout range (seconds)
NEGOTIATION_TIMEOUT_RANGE = (30.0, 45.0)


@dataclass
class CallSettings:
    """Tunables for calls. Empty device names mean system default."""

    ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: [dict(s) for s in DEFAULT_ICE_SERVERS])
    negotiation_timeout: float = 40.0
    disconnect_grace: float = 4.0
    publish_attempts: int = 3
    publish_base_delay: float = 0.5
    publish_max_delay: float = 4.0
    ring_timeout: float = 60.0

    microphone_device: str = ''
    camera_device: str = ''
    display_device: str = ''
    video_size: str = '640x480'
    framerate: int = 30

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def controller_options(self) -> Dict[str, Any]:
        """Keyword arguments for CallSessionController."""
        return {
            'negotiation_timeout': self.negotiation_timeout,
            'disconnect_grace': self.disconnect_grace,
            'publish_attempts': self.publish_attempts,
            'publish_base_delay': self.publish_base_delay,
            'publish_max_delay': self.publish_max_delay,
        }


def _valid_ice_servers(value) -> bool:
    if not isinstance(value, list):
        return False
    for server in value:
        if not isinstance(server, dict) or not server.get('urls'):
            return False
    return True


def settings_from_dict(data: Dict[str, Any]) -> CallSettings:
    """
    Build CallSettings from a dict, keeping defaults for invalid entries.
    """
    settings = CallSettings()
    known = {f.name: f for f in fields(CallSettings)}

    for name, value in data.items():
        if name not in known:
            logger.debug(f"Unknown call setting ignored: {name}")
            continue

        default = getattr(settings, name)
        if name == 'ice_servers':
            if _valid_ice_servers(value):
                settings.ice_servers = value
            else:
                logger.warning("Invalid ice_servers in call settings, using defaults")
        elif isinstance(default, str):
            if isinstance(value, str):
                setattr(settings, name, value)
            else:
                logger.warning(f"Invalid value for {name}: {value!r}, using default {default!r}")
        elif isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            logger.warning(f"Invalid value for {name}: {value!r}, using default {default!r}")
        else:
            setattr(settings, name, type(default)(value))

    low, high = NEGOTIATION_TIMEOUT_RANGE
    if not low <= settings.negotiation_timeout <= high:
        clamped = min(max(settings.negotiation_timeout, low), high)
        logger.warning(f"negotiation_timeout {settings.negotiation_timeout}s out of range, using {clamped}s")
        settings.negotiation_timeout = clamped

    return settings


def load_call_settings(path: Optional[Path] = None) -> CallSettings:
    """
    Load call settings from calls.json.

    Args:
        path: Settings file (default: <config_dir>/calls.json)

    Returns:
        CallSettings (defaults when the file is absent or unreadable)
    """
    path = path or get_paths().call_settings_path()
    if not path.exists():
        logger.debug(f"No call settings at {path}, using defaults")
        return CallSettings()

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load call settings from {path}: {e}")
        return CallSettings()

    if not isinstance(data, dict):
        logger.error(f"Call settings in {path} must be a JSON object, using defaults")
        return CallSettings()

    settings = settings_from_dict(data)
    logger.debug(
        f"Loaded call settings: mic={settings.microphone_device or 'default'}, "
        f"camera={settings.camera_device or 'default'}, ice_servers={len(settings.ice_servers)}"
    )
    return settings


def save_call_settings(settings: CallSettings, path: Optional[Path] = None):
    """Write call settings to calls.json."""
    path = path or get_paths().call_settings_path()
    with open(path, 'w') as f:
        json.dump(settings.to_dict(), f, indent=2)
    logger.info(f"Call settings saved to {path}")
