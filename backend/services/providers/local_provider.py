"""
Local (on-device) Speech Provider

Wraps a platform SpeechSynthesizer. The synthesizer speaks directly (no audio
bytes come back), reports sentence-level boundaries and has no notion of
duration, so this provider is not time-addressable.

Stopping mid-utterance produces an 'interrupted' error event, the same way
platform synthesizers report a cancelled utterance. The orchestrator treats
it as benign.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
from loguru import logger

from .base_provider import BaseSpeechProvider
from config import PLAYBACK_CHARS_PER_MINUTE
from core.provider_exceptions import ProviderPlaybackError, VoiceDownloadError
from models.playback_models import ProviderEvent, Voice


BoundaryCallback = Callable[[int], None]
ProgressCallback = Callable[[float, str], None]


class SpeechSynthesizer(ABC):
    """Platform speech synthesizer (implemented per platform)."""

    supports_downloads: bool = False

    @abstractmethod
    async def list_voices(self) -> List[Dict[str, Any]]:
        """
        Returns:
            Dicts with 'id', 'name' and optionally 'language', 'isDownloaded'
        """
        pass

    @abstractmethod
    async def speak(self, text: str, voice_id: Optional[str], rate: float, on_boundary: BoundaryCallback) -> None:
        """Speak text; returns when the utterance has finished."""
        pass

    @abstractmethod
    async def cancel(self) -> None:
        pass

    async def download_voice(self, voice_id: str, on_progress: ProgressCallback) -> None:
        raise NotImplementedError("Synthesizer has no downloadable voices")

    async def is_voice_downloaded(self, voice_id: str) -> bool:
        return True

    async def delete_voice(self, voice_id: str) -> None:
        raise NotImplementedError("Synthesizer has no downloadable voices")


class SimulatedSynthesizer(SpeechSynthesizer):
    """
    Synthesizer that "speaks" by waiting for the estimated narration time.

    Used by the backend when no platform synthesizer is attached, and in tests
    (time_scale=0 finishes utterances immediately).
    """

    def __init__(self, time_scale: float = 1.0, voices: Optional[List[Dict[str, Any]]] = None):
        self.time_scale = time_scale
        self.voices = voices or [{"id": "default", "name": "Default", "language": "en"}]
        self.spoken: List[str] = []

    async def list_voices(self) -> List[Dict[str, Any]]:
        return list(self.voices)

    async def speak(self, text: str, voice_id: Optional[str], rate: float, on_boundary: BoundaryCallback) -> None:
        self.spoken.append(text)
        on_boundary(0)
        chars_per_second = (PLAYBACK_CHARS_PER_MINUTE / 60.0) * max(rate, 0.1)
        await asyncio.sleep(len(text) / chars_per_second * self.time_scale)

    async def cancel(self) -> None:
        return None


class LocalSpeechProvider(BaseSpeechProvider):
    """
    On-device speech provider

    Features:
    - No network required (fallback target for every other provider)
    - Sentence-level 'boundary' events
    - Optional voice downloads, delegated to the synthesizer
    """

    kind = "local"
    is_time_addressable = False
    supports_resume = False

    def __init__(self, synthesizer: Optional[SpeechSynthesizer] = None, silent: bool = False, **kwargs):
        """
        Args:
            synthesizer: Platform synthesizer (defaults to SimulatedSynthesizer)
            silent: If True, suppress initialization logs
        """
        super().__init__(silent=silent, **kwargs)
        self.synthesizer = synthesizer or SimulatedSynthesizer()
        self.supports_downloads = self.synthesizer.supports_downloads
        self._voices: List[Voice] = []
        self._utterance_task: Optional[asyncio.Task] = None
        self._generation = 0

    @classmethod
    def get_provider_id_static(cls) -> str:
        return "local"

    @classmethod
    def get_display_name_static(cls) -> str:
        return "On-device Speech"

    async def init(self) -> None:
        if self.is_initialized and self._voices:
            return
        self._voices = await self._load_voices()
        self.is_initialized = True
        logger.debug(f"[LocalProvider] Initialized with {len(self._voices)} voices")

    async def get_voices(self) -> List[Voice]:
        if not self._voices:
            self._voices = await self._load_voices()
        return list(self._voices)

    async def _load_voices(self) -> List[Voice]:
        raw_voices = await self.synthesizer.list_voices()
        return [
            Voice(
                id=v["id"],
                name=v.get("name", v["id"]),
                language=v.get("language", "en"),
                provider_id=self.provider_id,
                is_downloaded=v.get("isDownloaded", True)
            )
            for v in raw_voices
        ]

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def play(self, text: str, voice_id: Optional[str], speed: float) -> None:
        await self.stop()
        if not self.is_initialized:
            await self.init()

        self._generation += 1
        generation = self._generation

        self.emit(ProviderEvent(type="start"))
        self._utterance_task = asyncio.create_task(
            self._speak(generation, text, voice_id, speed),
            name=f"LocalProvider:utterance:{generation}"
        )

    async def _speak(self, generation: int, text: str, voice_id: Optional[str], speed: float) -> None:
        def on_boundary(char_index: int) -> None:
            if generation == self._generation:
                self.emit(ProviderEvent(type="boundary", char_index=char_index))

        try:
            await self.synthesizer.speak(text, voice_id, speed, on_boundary)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == self._generation:
                logger.warning(f"[LocalProvider] Utterance failed: {e}")
                self.emit_error(ProviderPlaybackError(str(e)))
            return

        if generation == self._generation:
            self.emit(ProviderEvent(type="end"))

    async def pause(self) -> None:
        # Platform synthesizers cannot reliably pause mid-utterance
        await self.stop()

    async def resume(self) -> None:
        return None

    async def stop(self) -> None:
        task = self._utterance_task
        self._utterance_task = None
        if task is None or task.done():
            return

        # Invalidate callbacks of the cancelled utterance
        self._generation += 1
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        try:
            await self.synthesizer.cancel()
        except Exception as e:
            logger.warning(f"[LocalProvider] Synthesizer cancel failed: {e}")

        self.emit_error("interrupted")

    # ------------------------------------------------------------------
    # Voice downloads
    # ------------------------------------------------------------------

    async def is_voice_downloaded(self, voice_id: str) -> bool:
        return await self.synthesizer.is_voice_downloaded(voice_id)

    async def download_voice(self, voice_id: str) -> None:
        if not self.supports_downloads:
            await super().download_voice(voice_id)

        def on_progress(percent: float, status: str) -> None:
            self.emit(ProviderEvent(
                type="download-progress",
                voice_id=voice_id,
                percent=percent,
                message=status
            ))

        logger.info(f"[LocalProvider] Downloading voice {voice_id}")
        try:
            await self.synthesizer.download_voice(voice_id, on_progress)
        except Exception as e:
            raise VoiceDownloadError(f"Download of voice {voice_id} failed: {e}") from e

        self._voices = []
        on_progress(100.0, "completed")

    async def delete_voice(self, voice_id: str) -> None:
        if not self.supports_downloads:
            await super().delete_voice(voice_id)
        try:
            await self.synthesizer.delete_voice(voice_id)
        except Exception as e:
            raise VoiceDownloadError(f"Deleting voice {voice_id} failed: {e}") from e
        self._voices = []
