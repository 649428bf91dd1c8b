"""
Preview Speech Provider

Mock provider that "narrates" instantly: 'start' is emitted when play() is
called and 'end' right after (or after simulate_delay seconds).

Perfect for:
- Voice sampling in settings screens
- Testing the orchestrator without a platform synthesizer
- CI runs

Items narrated through this provider never produce reading-history entries.
"""
import asyncio
from typing import List, Optional
from loguru import logger

from .base_provider import BaseSpeechProvider
from models.playback_models import ProviderEvent, Voice


PREVIEW_VOICES = [
    ("preview-1", "Preview Voice 1"),
    ("preview-2", "Preview Voice 2"),
]


class PreviewSpeechProvider(BaseSpeechProvider):
    """
    Preview/mock provider

    Attributes:
        spoken: Every text passed to play(), in order
        simulate_delay: Seconds between 'start' and 'end' (0 = immediate)
    """

    kind = "preview"
    is_time_addressable = False
    supports_resume = False

    def __init__(self, simulate_delay: float = 0.0, silent: bool = False, **kwargs):
        super().__init__(silent=silent, **kwargs)
        self.simulate_delay = simulate_delay
        self.spoken: List[str] = []
        self._pending_end: Optional[asyncio.Task] = None

        if not silent:
            logger.debug(f"[PreviewProvider] Initialized (delay: {simulate_delay}s)")

    @classmethod
    def get_provider_id_static(cls) -> str:
        return "preview"

    @classmethod
    def get_display_name_static(cls) -> str:
        return "Preview (mock)"

    async def get_voices(self) -> List[Voice]:
        return [
            Voice(id=voice_id, name=name, provider_id=self.provider_id)
            for voice_id, name in PREVIEW_VOICES
        ]

    async def play(self, text: str, voice_id: Optional[str], speed: float) -> None:
        await self.stop()
        self.spoken.append(text)
        self.emit(ProviderEvent(type="start"))

        if self.simulate_delay <= 0:
            self.emit(ProviderEvent(type="end"))
            return

        self._pending_end = asyncio.create_task(self._finish_later())

    async def _finish_later(self) -> None:
        await asyncio.sleep(self.simulate_delay)
        self._pending_end = None
        self.emit(ProviderEvent(type="end"))

    async def pause(self) -> None:
        await self.stop()

    async def resume(self) -> None:
        return None

    async def stop(self) -> None:
        task = self._pending_end
        self._pending_end = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
