"""
Unit Tests for the speech providers

Event channel behaviour of the local, preview and cloud providers.
"""

import asyncio
import base64
import httpx
import pytest

from core.provider_exceptions import ProviderSynthesisError, VoiceDownloadError
from services.providers.cloud_provider import CloudSpeechProvider
from services.providers.audio_sink import SimulatedAudioSink
from services.providers.local_provider import LocalSpeechProvider, SimulatedSynthesizer
from services.providers.preview_provider import PreviewSpeechProvider


def drain_events(provider):
    events = []
    while not provider.events.empty():
        events.append(provider.events.get_nowait())
    return events


async def wait_for_event(provider, event_type, timeout=2.0):
    async def _wait():
        while True:
            event = await provider.events.get()
            if event.type == event_type:
                return event
    return await asyncio.wait_for(_wait(), timeout)


class TestPreviewProvider:
    """Tests for the mock provider."""

    @pytest.mark.asyncio
    async def test_immediate_start_and_end(self):
        """Without delay, play() emits start then end."""
        provider = PreviewSpeechProvider(silent=True)
        await provider.play("Hello", None, 1.0)
        assert [e.type for e in drain_events(provider)] == ["start", "end"]
        assert provider.spoken == ["Hello"]

    @pytest.mark.asyncio
    async def test_stop_cancels_delayed_end(self):
        """Stopping before the simulated end suppresses it."""
        provider = PreviewSpeechProvider(simulate_delay=0.05, silent=True)
        await provider.play("Hello", None, 1.0)
        await provider.stop()
        await asyncio.sleep(0.1)
        assert [e.type for e in drain_events(provider)] == ["start"]


class TestLocalProvider:
    """Tests for the on-device provider."""

    @pytest.mark.asyncio
    async def test_utterance_emits_start_boundary_end(self):
        provider = LocalSpeechProvider(synthesizer=SimulatedSynthesizer(time_scale=0), silent=True)
        await provider.play("One sentence.", None, 1.0)
        await wait_for_event(provider, "end")
        assert provider.synthesizer.spoken == ["One sentence."]

    @pytest.mark.asyncio
    async def test_stop_mid_utterance_reports_interrupted(self):
        """Cancelling a running utterance emits the benign 'interrupted' error, not 'end'."""
        provider = LocalSpeechProvider(synthesizer=SimulatedSynthesizer(time_scale=10), silent=True)
        await provider.play("A long sentence that takes a while.", None, 1.0)
        await provider.stop()

        events = drain_events(provider)
        types = [e.type for e in events]
        assert "end" not in types
        assert events[-1].type == "error"
        assert events[-1].error == "interrupted"

    @pytest.mark.asyncio
    async def test_voices_from_synthesizer(self):
        synth = SimulatedSynthesizer(voices=[{"id": "v1", "name": "Voice One", "language": "de"}])
        provider = LocalSpeechProvider(synthesizer=synth, silent=True)
        voices = await provider.get_voices()
        assert voices[0].id == "v1"
        assert voices[0].language == "de"
        assert voices[0].provider_id == "local"

    @pytest.mark.asyncio
    async def test_download_without_support_raises(self):
        """Synthesizers without downloadable voices reject downloads."""
        provider = LocalSpeechProvider(synthesizer=SimulatedSynthesizer(), silent=True)
        with pytest.raises(VoiceDownloadError):
            await provider.download_voice("v1")


def make_cloud(handler, **kwargs) -> CloudSpeechProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CloudSpeechProvider(
        base_url="http://engine.test",
        http_client=client,
        sink=SimulatedAudioSink(sample_rate=100, tick=0.25, time_scale=0),
        silent=True,
        **kwargs
    )


class TestCloudProvider:
    """Tests for the HTTP provider (engine mocked with httpx.MockTransport)."""

    @pytest.mark.asyncio
    async def test_request_payload_and_playback_events(self):
        """play() posts a camelCase request and emits start, timeupdate and end."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=b"\x00" * 200, headers={"content-type": "audio/wav"})

        provider = make_cloud(handler, language="de")
        await provider.play("Hallo Welt", "speaker-1", 1.5)
        await wait_for_event(provider, "end")

        assert requests[0].url.path == "/generate"
        body = requests[0].read()
        assert b'"ttsSpeakerWav":"speaker-1"' in body.replace(b" ", b"")
        assert b'"language":"de"' in body.replace(b" ", b"")
        assert provider.duration() == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_json_response_emits_alignment_meta(self):
        """Word timings in a JSON response are forwarded as a 'meta' event."""
        def handler(request):
            return httpx.Response(200, json={
                "audio": base64.b64encode(b"\x00" * 20).decode(),
                "alignment": [{"time": 0.0, "textOffset": 0}, {"time": 0.05, "textOffset": 6}]
            })

        provider = make_cloud(handler)
        await provider.play("Hello world", None, 1.0)
        meta = await wait_for_event(provider, "meta")
        assert [a.text_offset for a in meta.alignment] == [0, 6]

    @pytest.mark.asyncio
    async def test_engine_error_raises_synthesis_error(self):
        """HTTP 5xx from the engine surfaces as ProviderSynthesisError."""
        provider = make_cloud(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(ProviderSynthesisError, match="503"):
            await provider.play("Hello", None, 1.0)

    @pytest.mark.asyncio
    async def test_preload_fills_cache(self):
        """A preloaded utterance plays without a second request."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=b"\x00" * 10, headers={"content-type": "audio/wav"})

        provider = make_cloud(handler)
        await provider.preload("Next sentence.", None, 1.0)
        await provider.play("Next sentence.", None, 1.0)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_preload_failure_is_swallowed(self):
        """Preload is best effort."""
        provider = make_cloud(lambda request: httpx.Response(500))
        await provider.preload("Anything", None, 1.0)
