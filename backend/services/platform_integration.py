"""
Platform Integration - media session and background audio

Mirrors playback state onto the platform:
- media session playback state, metadata (deduplicated) and position
- background audio keep-alive: started while playing/loading/completed,
  stopped with a short debounce on pause, stopped immediately otherwise
- media session actions (play, pause, stop, prev, next, seek +-10 s, seek to)
  bound to orchestrator commands

The platform pieces are collaborators (MediaSession, BackgroundAudio). The
backend runs headless with the recording implementations below.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from loguru import logger

from core.provider_exceptions import PlatformCapabilityError


# Seconds skipped by the media session seek backward/forward actions
MEDIA_SEEK_OFFSET = 10

# Delay before background audio stops after a pause (seconds)
BACKGROUND_STOP_DEBOUNCE = 0.5


@dataclass(frozen=True)
class MediaMetadata:
    title: str
    artist: Optional[str] = None
    album: Optional[str] = None
    artwork_url: Optional[str] = None


class MediaSession(ABC):
    """Platform media session (lock screen / notification controls)."""

    @abstractmethod
    def set_playback_state(self, state: str) -> None:
        """state: 'playing', 'paused' or 'none'"""
        pass

    @abstractmethod
    def set_metadata(self, metadata: MediaMetadata) -> None:
        pass

    @abstractmethod
    def set_position_state(self, duration: float, playback_rate: float, position: float) -> None:
        pass

    @abstractmethod
    def set_action_handlers(self, handlers: Dict[str, Callable[..., Any]]) -> None:
        pass


class BackgroundAudio(ABC):
    """Keeps the process allowed to play while the app is in the background."""

    @abstractmethod
    def start(self, mode: str) -> None:
        """
        Raises:
            PlatformCapabilityError: The platform refused background playback
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        pass


class RecordingMediaSession(MediaSession):
    """Headless media session: remembers what it was told."""

    def __init__(self):
        self.playback_state = "none"
        self.metadata: Optional[MediaMetadata] = None
        self.metadata_updates = 0
        self.position: Optional[Tuple[float, float, float]] = None
        self.handlers: Dict[str, Callable[..., Any]] = {}

    def set_playback_state(self, state: str) -> None:
        self.playback_state = state

    def set_metadata(self, metadata: MediaMetadata) -> None:
        self.metadata = metadata
        self.metadata_updates += 1

    def set_position_state(self, duration: float, playback_rate: float, position: float) -> None:
        self.position = (duration, playback_rate, position)

    def set_action_handlers(self, handlers: Dict[str, Callable[..., Any]]) -> None:
        self.handlers = dict(handlers)


class RecordingBackgroundAudio(BackgroundAudio):
    """Headless background audio; can be told to refuse (capability denied)."""

    def __init__(self, denied: bool = False):
        self.denied = denied
        self.active = False
        self.mode: Optional[str] = None

    def start(self, mode: str) -> None:
        if self.denied:
            raise PlatformCapabilityError("Background audio playback is not permitted")
        self.active = True
        self.mode = mode

    def stop(self) -> None:
        self.active = False


class PlatformIntegration:
    """
    Mirrors playback onto the media session and background audio.

    Attributes:
        background_mode: 'silence' or 'white-noise'
    """

    def __init__(
        self,
        media_session: Optional[MediaSession] = None,
        background_audio: Optional[BackgroundAudio] = None,
        background_mode: str = "silence",
        stop_debounce: float = BACKGROUND_STOP_DEBOUNCE
    ):
        self.media_session = media_session or RecordingMediaSession()
        self.background_audio = background_audio or RecordingBackgroundAudio()
        self.background_mode = background_mode
        self.stop_debounce = stop_debounce
        self._last_metadata: Optional[MediaMetadata] = None
        self._debounced_stop: Optional[asyncio.Task] = None

    def bind_actions(
        self,
        on_play: Callable[[], Any],
        on_pause: Callable[[], Any],
        on_stop: Callable[[], Any],
        on_prev: Callable[[], Any],
        on_next: Callable[[], Any],
        on_seek: Callable[[int], Any],
        on_seek_to: Callable[[float], Any]
    ) -> None:
        """Route media session actions to playback commands."""
        def seek_to(details: Optional[Dict[str, Any]] = None) -> Any:
            seek_time = (details or {}).get("seekTime")
            if seek_time is None:
                return None
            return on_seek_to(float(seek_time))

        self.media_session.set_action_handlers({
            "play": on_play,
            "pause": on_pause,
            "stop": on_stop,
            "previoustrack": on_prev,
            "nexttrack": on_next,
            "seekbackward": lambda *_: on_seek(-MEDIA_SEEK_OFFSET),
            "seekforward": lambda *_: on_seek(MEDIA_SEEK_OFFSET),
            "seekto": seek_to,
        })

    def update_playback_state(self, status: str) -> None:
        """
        Apply a playback status.

        Raises:
            PlatformCapabilityError: Background playback was refused
        """
        if status == "playing":
            self.media_session.set_playback_state("playing")
        elif status == "paused":
            self.media_session.set_playback_state("paused")
        else:
            self.media_session.set_playback_state("none")

        if status in ("playing", "loading", "completed"):
            self._cancel_debounced_stop()
            self.background_audio.start(self.background_mode)
        elif status == "paused":
            self._schedule_debounced_stop()
        else:
            self._cancel_debounced_stop()
            self.background_audio.stop()

    def update_metadata(self, metadata: MediaMetadata) -> None:
        """Forward metadata unless it equals the last one sent."""
        if self._last_metadata == metadata:
            return
        self.media_session.set_metadata(metadata)
        self._last_metadata = metadata

    def set_position_state(self, duration: float, playback_rate: float, position: float) -> None:
        position = max(0.0, min(position, duration)) if duration > 0 else 0.0
        try:
            self.media_session.set_position_state(duration, playback_rate, position)
        except Exception as e:
            logger.debug(f"[PlatformIntegration] Position update rejected: {e}")

    def stop(self) -> None:
        try:
            self.media_session.set_playback_state("none")
        except Exception as e:
            logger.warning(f"[PlatformIntegration] Failed to reset media session: {e}")
        self._cancel_debounced_stop()
        self.background_audio.stop()

    def _schedule_debounced_stop(self) -> None:
        self._cancel_debounced_stop()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.background_audio.stop()
            return
        self._debounced_stop = loop.create_task(self._stop_later())

    async def _stop_later(self) -> None:
        await asyncio.sleep(self.stop_debounce)
        self._debounced_stop = None
        self.background_audio.stop()

    def _cancel_debounced_stop(self) -> None:
        if self._debounced_stop is not None and not self._debounced_stop.done():
            self._debounced_stop.cancel()
        self._debounced_stop = None
