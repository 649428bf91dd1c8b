"""
Audio output for providers that synthesize audio bytes.

AudioSink is the platform audio element: the cloud provider hands it the
synthesized bytes and reads playback time back from it.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional


class AudioSink(ABC):
    """Platform audio output (implemented per platform)."""

    @abstractmethod
    async def play(self, audio: bytes) -> bool:
        """
        Play audio; returns when playback ends.

        Returns:
            True if playback reached the end, False if it was stopped
        """
        pass

    @abstractmethod
    async def pause(self) -> None:
        pass

    @abstractmethod
    async def resume(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    def current_time(self) -> float:
        pass

    @abstractmethod
    def duration(self) -> Optional[float]:
        pass

    @abstractmethod
    async def seek(self, seconds: float) -> None:
        pass


class SimulatedAudioSink(AudioSink):
    """
    Sink that advances a clock instead of producing sound.

    Duration is derived from the byte count assuming 16-bit mono PCM at
    `sample_rate`. time_scale=0 plays instantly (tests).
    """

    def __init__(self, sample_rate: int = 24000, tick: float = 0.25, time_scale: float = 1.0):
        self.bytes_per_second = sample_rate * 2
        self.tick = tick
        self.time_scale = time_scale
        self._position = 0.0
        self._duration: Optional[float] = None
        self._stopped = False
        self._running = asyncio.Event()

    async def play(self, audio: bytes) -> bool:
        self._duration = len(audio) / self.bytes_per_second
        self._position = 0.0
        self._stopped = False
        self._running.set()

        while self._position < self._duration:
            await self._running.wait()
            if self._stopped:
                return False
            step = min(self.tick, self._duration - self._position)
            await asyncio.sleep(step * self.time_scale)
            if self._stopped:
                return False
            self._position += step
        return True

    async def pause(self) -> None:
        self._running.clear()

    async def resume(self) -> None:
        self._running.set()

    async def stop(self) -> None:
        self._stopped = True
        self._running.set()

    def current_time(self) -> float:
        return self._position

    def duration(self) -> Optional[float]:
        return self._duration

    async def seek(self, seconds: float) -> None:
        if self._duration is None:
            return
        self._position = max(0.0, min(seconds, self._duration))
