"""
Abstract Base Class for Speech Providers

Defines the interface every speech backend implements so that the playback
orchestrator can drive them interchangeably.

Architecture:
    BaseSpeechProvider (ABC)
    ├── LocalSpeechProvider   (on-device synthesizer, sentence-level boundaries)
    ├── CloudSpeechProvider   (HTTP synthesis + audio sink, time-addressable)
    └── PreviewSpeechProvider (mock, immediate start/end)

Event channel:
    Each provider instance owns one asyncio.Queue of ProviderEvent. The
    orchestrator runs exactly one listener task per active provider that
    drains this queue. A provider replaced by fallback or set_provider keeps
    its own queue, so late events from it can be told apart and dropped.

Playback contract:
    play() returns once the utterance has started (a 'start' event has been
    emitted). 'end' is emitted when it finishes naturally. Failures are either
    raised from play() or emitted later as an 'error' event.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from loguru import logger

from core.provider_exceptions import VoiceDownloadError
from models.playback_models import ProviderEvent, Voice


class BaseSpeechProvider(ABC):
    """
    Abstract base class for speech providers

    Attributes:
        kind: 'local', 'cloud' or 'preview'
        is_time_addressable: Reports continuous time / duration and can seek
        supports_resume: pause()/resume() continue the same utterance
        supports_downloads: Voices must be downloaded before use
        events: Per-instance event channel
        is_initialized: init() completed
    """

    kind: str = "local"
    is_time_addressable: bool = False
    supports_resume: bool = False
    supports_downloads: bool = False

    def __init__(self, silent: bool = False, **kwargs):
        """
        Initialize provider

        Args:
            silent: If True, suppress initialization logs (for metadata-only instances)
            **kwargs: Provider-specific configuration
        """
        self.events: asyncio.Queue = asyncio.Queue()
        self.is_initialized = False
        self.silent = silent
        self.config: Dict[str, Any] = dict(kwargs)

        if not silent:
            logger.debug(f"[{self.get_display_name()}] Created (kind={self.kind})")

    @classmethod
    @abstractmethod
    def get_provider_id_static(cls) -> str:
        """
        Return unique provider identifier (class method for registry lookups)

        Returns:
            Provider id (e.g., 'local', 'cloud', 'preview')
        """
        pass

    @property
    def provider_id(self) -> str:
        return self.get_provider_id_static()

    @classmethod
    @abstractmethod
    def get_display_name_static(cls) -> str:
        """Return human-readable provider name"""
        pass

    def get_display_name(self) -> str:
        return self.get_display_name_static()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Prepare the backend (load voices, open clients). Idempotent."""
        self.is_initialized = True

    async def close(self) -> None:
        """Release resources. Stops any playback first."""
        await self.stop()

    @abstractmethod
    async def get_voices(self) -> List[Voice]:
        """
        List voices offered by this provider

        Returns:
            Voices (may be empty while the backend is still loading)
        """
        pass

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    @abstractmethod
    async def play(self, text: str, voice_id: Optional[str], speed: float) -> None:
        """
        Start narrating text. Any current utterance is stopped first.

        Args:
            text: Text after pronunciation substitution
            voice_id: Voice to use (None = provider default)
            speed: Playback rate multiplier

        Raises:
            ProviderSynthesisError: Synthesis or fetch failed
            ProviderPlaybackError: Audio could not be played
        """
        pass

    async def preload(self, text: str, voice_id: Optional[str], speed: float) -> None:
        """
        Prepare text ahead of time. Best effort: failures are logged, never raised.
        """
        return None

    @abstractmethod
    async def pause(self) -> None:
        pass

    @abstractmethod
    async def resume(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the current utterance. Safe to call when idle."""
        pass

    def current_time(self) -> float:
        """Seconds into the current utterance (0 if not time-addressable)."""
        return 0.0

    def duration(self) -> Optional[float]:
        """Duration of the current utterance if known."""
        return None

    async def seek(self, seconds: float) -> None:
        """Seek within the current utterance (no-op if not time-addressable)."""
        return None

    # ------------------------------------------------------------------
    # Voice downloads (optional capability)
    # ------------------------------------------------------------------

    async def is_voice_downloaded(self, voice_id: str) -> bool:
        return True

    async def download_voice(self, voice_id: str) -> None:
        """
        Install voice assets. Emits 'download-progress' events.

        Raises:
            VoiceDownloadError: Provider has no downloadable voices or download failed
        """
        raise VoiceDownloadError(f"{self.provider_id} has no downloadable voices (requested: {voice_id})")

    async def delete_voice(self, voice_id: str) -> None:
        raise VoiceDownloadError(f"{self.provider_id} has no downloadable voices (requested: {voice_id})")

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def emit(self, event: ProviderEvent) -> None:
        """Publish an event on this provider's channel."""
        self.events.put_nowait(event)

    def emit_error(self, error: Any) -> None:
        self.emit(ProviderEvent(type="error", error=error))

    def get_info(self) -> Dict[str, Any]:
        """
        Get provider information

        Returns:
            Dictionary with provider metadata
        """
        return {
            "id": self.provider_id,
            "displayName": self.get_display_name(),
            "kind": self.kind,
            "isTimeAddressable": self.is_time_addressable,
            "supportsDownloads": self.supports_downloads,
            "isInitialized": self.is_initialized,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.provider_id}, kind={self.kind})>"
