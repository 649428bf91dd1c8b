"""
Default settings for the narration playback engine.

This module defines the default playback preferences that are used to
initialize the settings table on first run.
"""

from typing import Any, Dict, List, Tuple

DEFAULT_PLAYBACK_SETTINGS: Dict[str, Any] = {
    "playback": {
        "providerId": "local",  # local, cloud, preview
        "voiceId": None,  # None = provider default voice
        "speed": 1.0,
        "prerollEnabled": False,  # Announce section title and reading time
        "smartResumeEnabled": True,  # Rewind after long pauses
        "backgroundAudioMode": "silence"  # silence, white-noise
    },
    "providers": {
        # Per-provider constructor configuration (e.g. {"cloud": {"baseUrl": ...}})
        "cloud": {
            "baseUrl": None,  # None = CLOUD_TTS_URL
            "language": "en"
        }
    }
}


def lookup_path(tree: Any, path: List[str]) -> Tuple[bool, Any]:
    """Walk nested dicts; returns (found, value)."""
    current = tree
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def get_default_setting(key: str) -> Any:
    """Default for a dot-notation key such as 'playback.speed', or None."""
    _, value = lookup_path(DEFAULT_PLAYBACK_SETTINGS, key.split('.'))
    return value
