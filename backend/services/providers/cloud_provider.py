"""
Cloud Speech Provider

Synthesizes audio over HTTP from an engine server exposing POST /generate and
plays the returned bytes through an AudioSink.

Request (camelCase, engine server contract):
    {"text": ..., "language": "en", "ttsSpeakerWav": <voice id>,
     "parameters": {"speed": 1.0}}

Response:
    - raw audio bytes (audio/wav), or
    - JSON {"audio": <base64>, "alignment": [{"time": s, "textOffset": n}, ...]}
      when the engine returns word timings

Synthesized utterances are kept in a small LRU cache so that a preloaded
next item starts without a round trip.
"""
import asyncio
import base64
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import httpx
from loguru import logger

from .base_provider import BaseSpeechProvider
from .audio_sink import AudioSink, SimulatedAudioSink
from config import CLOUD_TTS_URL, CLOUD_TTS_TIMEOUT, PRELOAD_CACHE_SIZE
from core.provider_exceptions import ProviderSynthesisError, ProviderPlaybackError
from models.playback_models import AlignmentEntry, ProviderEvent, Voice


DEFAULT_CLOUD_VOICES = [
    {"id": "default", "name": "Default", "language": "en"},
]

# Interval between 'timeupdate' events while audio is playing (seconds)
TIMEUPDATE_INTERVAL = 0.25


@dataclass
class SynthesizedAudio:
    audio: bytes
    alignment: Optional[List[AlignmentEntry]] = None


class CloudSpeechProvider(BaseSpeechProvider):
    """
    HTTP speech provider

    Features:
    - Time-addressable: duration, continuous 'timeupdate', seek
    - In-utterance pause/resume through the sink
    - Look-ahead preload into an LRU cache
    - 'meta' event with the alignment table when the engine sends one
    """

    kind = "cloud"
    is_time_addressable = True
    supports_resume = True

    def __init__(
        self,
        base_url: str = CLOUD_TTS_URL,
        language: str = "en",
        sink: Optional[AudioSink] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_size: int = PRELOAD_CACHE_SIZE,
        timeout: float = CLOUD_TTS_TIMEOUT,
        voices: Optional[List[Dict[str, Any]]] = None,
        silent: bool = False,
        **kwargs
    ):
        """
        Args:
            base_url: Engine server URL
            language: Language sent with every request
            sink: Audio output (defaults to SimulatedAudioSink)
            http_client: Shared client (created lazily if None)
            cache_size: Max synthesized utterances kept
            timeout: HTTP timeout for synthesis (seconds)
            voices: Voices offered by the engine
        """
        super().__init__(silent=silent, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.sink = sink or SimulatedAudioSink()
        self.cache_size = cache_size
        self.timeout = timeout
        self._voices_config = voices or DEFAULT_CLOUD_VOICES
        self._http_client = http_client
        self._owns_client = http_client is None
        self._cache: "OrderedDict[Tuple[str, Optional[str], float], SynthesizedAudio]" = OrderedDict()
        self._playback_task: Optional[asyncio.Task] = None
        self._generation = 0

    @classmethod
    def get_provider_id_static(cls) -> str:
        return "cloud"

    @classmethod
    def get_display_name_static(cls) -> str:
        return "Cloud Speech"

    async def init(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        self.is_initialized = True

    async def close(self) -> None:
        await self.stop()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self.is_initialized = False

    async def get_voices(self) -> List[Voice]:
        return [
            Voice(
                id=v["id"],
                name=v.get("name", v["id"]),
                language=v.get("language", self.language),
                provider_id=self.provider_id
            )
            for v in self._voices_config
        ]

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    async def _synthesize(self, text: str, voice_id: Optional[str], speed: float) -> SynthesizedAudio:
        key = (text, voice_id, round(speed, 3))
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        if self._http_client is None:
            await self.init()

        url = f"{self.base_url}/generate"
        payload = {
            "text": text,
            "language": self.language,
            "ttsSpeakerWav": voice_id or "default",
            "parameters": {"speed": speed}
        }

        try:
            response = await self._http_client.post(url, json=payload)
            response.raise_for_status()
        except httpx.RequestError as e:
            raise ProviderSynthesisError(f"HTTP request to {url} failed: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ProviderSynthesisError(
                f"Engine returned error {e.response.status_code}: {e.response.text[:200]}"
            ) from e

        result = self._parse_response(response)

        self._cache[key] = result
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return result

    def _parse_response(self, response: httpx.Response) -> SynthesizedAudio:
        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("application/json"):
            if not response.content:
                raise ProviderSynthesisError("Engine returned empty audio")
            return SynthesizedAudio(audio=response.content)

        try:
            body = response.json()
            audio = base64.b64decode(body["audio"])
            alignment = [
                AlignmentEntry.model_validate(entry)
                for entry in body.get("alignment") or []
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderSynthesisError(f"Invalid JSON response from engine: {e}") from e

        return SynthesizedAudio(audio=audio, alignment=alignment or None)

    async def preload(self, text: str, voice_id: Optional[str], speed: float) -> None:
        try:
            await self._synthesize(text, voice_id, speed)
        except Exception as e:
            logger.warning(f"[CloudProvider] Preload failed: {e}")

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def play(self, text: str, voice_id: Optional[str], speed: float) -> None:
        await self.stop()
        synthesized = await self._synthesize(text, voice_id, speed)

        self._generation += 1
        generation = self._generation

        self.emit(ProviderEvent(type="start"))
        if synthesized.alignment:
            self.emit(ProviderEvent(type="meta", alignment=synthesized.alignment))

        self._playback_task = asyncio.create_task(
            self._play_audio(generation, synthesized.audio),
            name=f"CloudProvider:playback:{generation}"
        )

    async def _play_audio(self, generation: int, audio: bytes) -> None:
        ticker = asyncio.create_task(self._emit_time_updates(generation))
        try:
            finished = await self.sink.play(audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == self._generation:
                logger.warning(f"[CloudProvider] Playback failed: {e}")
                self.emit_error(ProviderPlaybackError(str(e)))
            return
        finally:
            ticker.cancel()

        if finished and generation == self._generation:
            self.emit(ProviderEvent(
                type="timeupdate",
                time=self.sink.current_time(),
                duration=self.sink.duration()
            ))
            self.emit(ProviderEvent(type="end"))

    async def _emit_time_updates(self, generation: int) -> None:
        last_time = -1.0
        while generation == self._generation:
            await asyncio.sleep(TIMEUPDATE_INTERVAL)
            current = self.sink.current_time()
            if current != last_time and generation == self._generation:
                last_time = current
                self.emit(ProviderEvent(type="timeupdate", time=current, duration=self.sink.duration()))

    async def pause(self) -> None:
        await self.sink.pause()

    async def resume(self) -> None:
        await self.sink.resume()

    async def stop(self) -> None:
        task = self._playback_task
        self._playback_task = None
        if task is None or task.done():
            return

        self._generation += 1
        await self.sink.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def current_time(self) -> float:
        return self.sink.current_time()

    def duration(self) -> Optional[float]:
        return self.sink.duration()

    async def seek(self, seconds: float) -> None:
        await self.sink.seek(seconds)
