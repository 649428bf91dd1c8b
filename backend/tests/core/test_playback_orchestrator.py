"""
Tests for PlaybackOrchestrator

Drives the state machine with scripted providers and an in-memory content
pipeline. Every command goes through the task chain, so each test waits for
the orchestrator to become idle before asserting.
"""
import asyncio
from typing import List, Optional
from unittest.mock import Mock

import pytest

from config import PLAYBACK_MAX_SPEED, PLAYBACK_MIN_SPEED
from core.playback_orchestrator import PlaybackOrchestrator
from core.provider_exceptions import ContentLoadError, ProviderSynthesisError
from models.playback_models import (
    PersistedSnapshot,
    PlaybackSettings,
    ProviderEvent,
    QueueItem,
    SectionInfo,
    TableAdaptation,
    Voice,
)
from services.content_pipeline import (
    CONTENT_LOAD_FAILED_MESSAGE,
    SectionContent,
    SentenceSegment,
    StaticContentPipeline,
)
from services.platform_integration import (
    PlatformIntegration,
    RecordingBackgroundAudio,
    RecordingMediaSession,
)
from services.provider_manager import ProviderManager
from services.providers.base_provider import BaseSpeechProvider


# ============================================================================
# Scripted providers
# ============================================================================

class ScriptedProvider(BaseSpeechProvider):
    """
    On-device stand-in.

    With auto_end=True every utterance ends immediately; otherwise it is held
    until finish() is called. Stopping a held utterance reports 'interrupted'.
    """

    kind = "local"

    def __init__(self, auto_end: bool = True, silent: bool = True, **kwargs):
        super().__init__(silent=silent, **kwargs)
        self.auto_end = auto_end
        self.spoken: List[str] = []
        self.speaking = False

    @classmethod
    def get_provider_id_static(cls) -> str:
        return "local"

    @classmethod
    def get_display_name_static(cls) -> str:
        return "Scripted"

    async def get_voices(self) -> List[Voice]:
        return [Voice(id="v1", name="Voice 1", provider_id=self.provider_id)]

    async def play(self, text: str, voice_id: Optional[str], speed: float) -> None:
        await self.stop()
        self.spoken.append(text)
        self.emit(ProviderEvent(type="start"))
        if self.auto_end:
            self.emit(ProviderEvent(type="end"))
        else:
            self.speaking = True

    def finish(self) -> None:
        self.speaking = False
        self.emit(ProviderEvent(type="end"))

    async def pause(self) -> None:
        await self.stop()

    async def resume(self) -> None:
        return None

    async def stop(self) -> None:
        if self.speaking:
            self.speaking = False
            self.emit_error("interrupted")


class FailingCloudProvider(BaseSpeechProvider):
    """Cloud stand-in whose synthesis always fails."""

    kind = "cloud"
    is_time_addressable = True
    supports_resume = True

    def __init__(self, silent: bool = True, **kwargs):
        super().__init__(silent=silent, **kwargs)
        self.attempts = 0

    @classmethod
    def get_provider_id_static(cls) -> str:
        return "cloud"

    @classmethod
    def get_display_name_static(cls) -> str:
        return "Failing Cloud"

    async def get_voices(self) -> List[Voice]:
        return []

    async def play(self, text: str, voice_id: Optional[str], speed: float) -> None:
        self.attempts += 1
        raise ProviderSynthesisError("Engine returned 503")

    async def pause(self) -> None:
        return None

    async def resume(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class ResumableProvider(ScriptedProvider):
    """
    Time-addressable stand-in that pauses in place.

    The held utterance survives pause(); finish() may still end it afterwards.
    """

    is_time_addressable = True
    supports_resume = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.paused = False
        self.resumed = 0

    async def pause(self) -> None:
        self.paused = True

    async def resume(self) -> None:
        self.paused = False
        self.resumed += 1


class BrokenPipeline(StaticContentPipeline):
    """Lists sections but cannot load their text."""

    async def load_section_content(self, book_id, section):
        raise ContentLoadError(f"Storage unavailable for {section.section_id}")


# ============================================================================
# Fixtures
# ============================================================================

def make_section(section_id: str, count: int, title: str = None, start: int = 0):
    sentences = [
        SentenceSegment(
            text=f"{section_id} sentence {i}.",
            location_id=f"{section_id}-loc-{i}",
            source_indices=(start + i,)
        )
        for i in range(count)
    ]
    info = SectionInfo(section_id=section_id, title=title or section_id.title())
    return info, SectionContent(title=info.title, sentences=sentences, book_title="A Book", author="An Author")


class ManualClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_chapter_queue(section_id: str, count: int) -> List[QueueItem]:
    """Queue items as make_section() content produces them."""
    return [
        QueueItem(
            text=f"{section_id} sentence {i}.",
            location_id=f"{section_id}-loc-{i}",
            source_indices=(i,)
        )
        for i in range(count)
    ]


def make_repository() -> Mock:
    repo = Mock()
    repo.load_last_snapshot.return_value = None
    repo.get_playback_state.return_value = None
    return repo


def make_orchestrator(
    sections=None,
    auto_end: bool = True,
    settings: PlaybackSettings = None,
    pipeline: StaticContentPipeline = None,
    background_denied: bool = False,
    local_class=ScriptedProvider,
    **kwargs
) -> PlaybackOrchestrator:
    manager = ProviderManager(provider_configs={"local": {"auto_end": auto_end}})
    manager.register_provider(local_class, provider_id="local")
    manager.register_provider(FailingCloudProvider, provider_id="cloud")

    repository = kwargs.pop("repository", None) or make_repository()
    pipeline = pipeline or StaticContentPipeline()
    pipeline.add_book("book-1", sections if sections is not None else [make_section("ch1", 3)])

    return PlaybackOrchestrator(
        provider_manager=manager,
        content_pipeline=pipeline,
        repository=repository,
        platform=PlatformIntegration(
            RecordingMediaSession(),
            RecordingBackgroundAudio(denied=background_denied),
            stop_debounce=0
        ),
        settings=settings or PlaybackSettings(),
        **kwargs
    )


def record_statuses(orch: PlaybackOrchestrator) -> List[str]:
    """Collect status transitions (consecutive duplicates collapsed)."""
    statuses: List[str] = []

    def listener(update):
        if not statuses or statuses[-1] != update.status:
            statuses.append(update.status)

    orch.subscribe(listener)
    return statuses


async def start_book(orch: PlaybackOrchestrator, section_index: int = 0) -> None:
    await orch.set_book("book-1")
    await orch.load_section(section_index)
    await orch.wait_idle()


# ============================================================================
# Transport commands
# ============================================================================

class TestTransport:
    """Play / pause / resume / stop on the task chain."""

    @pytest.mark.asyncio
    async def test_load_section_starts_playing(self):
        """Loading a section with auto-play moves loading -> playing."""
        orch = make_orchestrator(auto_end=False)
        statuses = record_statuses(orch)

        await start_book(orch)

        assert orch.status == "playing"
        assert "loading" in statuses
        assert orch.active_provider.spoken == ["ch1 sentence 0."]
        assert orch.get_state()["active_location_id"] == "ch1-loc-0"
        await orch.close()

    @pytest.mark.asyncio
    async def test_commands_run_in_submission_order(self):
        """pause then stop issued back to back end in stopped."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)
        statuses = record_statuses(orch)

        orch.pause()
        orch.stop()
        await orch.wait_idle()

        assert orch.status == "stopped"
        assert statuses[-2:] == ["paused", "stopped"]
        await orch.close()

    @pytest.mark.asyncio
    async def test_play_pause_stop_from_stopped_run_in_order(self):
        """Three commands issued without awaiting each other settle in FIFO order."""
        orch = make_orchestrator(auto_end=False)
        await orch.set_book("book-1")
        await orch.load_section(0, auto_play=False)
        await orch.wait_idle()
        assert orch.status == "stopped"
        statuses = record_statuses(orch)

        orch.play()
        orch.pause()
        orch.stop()
        await orch.wait_idle()

        assert orch.status == "stopped"
        assert statuses[-3:] == ["playing", "paused", "stopped"]
        assert orch.active_provider.spoken == ["ch1 sentence 0."]
        await orch.close()

    @pytest.mark.asyncio
    async def test_command_future_resolves(self):
        """Each command returns a future settled when it has run."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.pause()

        assert orch.status == "paused"
        await orch.close()

    @pytest.mark.asyncio
    async def test_play_while_paused_resumes(self):
        """play() on a paused session takes the resume path."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)
        await orch.pause()

        await orch.play()
        await orch.wait_idle()

        assert orch.status == "playing"
        # Non-resumable provider restarts the same item
        assert orch.active_provider.spoken == ["ch1 sentence 0.", "ch1 sentence 0."]
        await orch.close()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        """Stopping twice leaves the session stopped without errors."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.stop()
        await orch.stop()
        await orch.wait_idle()

        assert orch.status == "stopped"
        assert orch.last_error is None
        await orch.close()

    @pytest.mark.asyncio
    async def test_play_without_queue_stays_stopped(self):
        """Nothing loaded: play() is a no-op ending in stopped."""
        orch = make_orchestrator()

        await orch.play()
        await orch.wait_idle()

        assert orch.status == "stopped"
        await orch.close()

    @pytest.mark.asyncio
    async def test_late_end_after_stop_does_not_advance(self):
        """An 'end' arriving after stop never moves the queue."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)
        await orch.stop()

        orch.active_provider.emit(ProviderEvent(type="end"))
        await orch.wait_idle()

        assert orch.status == "stopped"
        assert orch.state.current_index == 0
        await orch.close()


class TestResumablePause:
    """Providers that pause in place and resume mid-utterance."""

    @pytest.mark.asyncio
    async def test_resume_continues_the_paused_utterance(self):
        orch = make_orchestrator(auto_end=False, local_class=ResumableProvider)
        await start_book(orch)
        await orch.pause()

        await orch.resume()
        await orch.wait_idle()

        provider = orch.active_provider
        assert orch.status == "playing"
        assert provider.resumed == 1
        assert provider.spoken == ["ch1 sentence 0."]
        await orch.close()

    @pytest.mark.asyncio
    async def test_end_during_pause_advances_on_resume(self):
        """An utterance finishing after pause() is completed; resume speaks the next item."""
        repo = make_repository()
        orch = make_orchestrator(auto_end=False, local_class=ResumableProvider, repository=repo)
        await start_book(orch)
        await orch.pause()
        provider = orch.active_provider

        provider.finish()
        await orch.wait_idle()
        assert orch.status == "paused"
        assert orch.state.current_index == 1

        await orch.resume()
        await orch.wait_idle()

        assert orch.status == "playing"
        assert provider.resumed == 0
        assert provider.spoken == ["ch1 sentence 0.", "ch1 sentence 1."]
        assert provider.speaking is True
        repo.update_reading_history.assert_any_call(
            "book-1", "ch1-loc-0", source="tts", label="ch1 sentence 0.", completed=True
        )
        await orch.close()

    @pytest.mark.asyncio
    async def test_end_of_last_item_during_pause_completes_on_resume(self):
        orch = make_orchestrator(
            auto_end=False, local_class=ResumableProvider, sections=[make_section("ch1", 1)]
        )
        await start_book(orch)
        await orch.pause()

        orch.active_provider.finish()
        await orch.wait_idle()
        await orch.resume()
        await orch.wait_idle()

        assert orch.status == "completed"
        assert orch.active_provider.spoken == ["ch1 sentence 0."]
        await orch.close()


# ============================================================================
# Queue progression
# ============================================================================

class TestProgression:
    """Natural end of utterances, sections and the book."""

    @pytest.mark.asyncio
    async def test_end_event_advances_queue(self):
        """'end' plays the next item."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        orch.active_provider.finish()
        await orch.wait_idle()

        assert orch.state.current_index == 1
        assert orch.active_provider.spoken[-1] == "ch1 sentence 1."
        await orch.close()

    @pytest.mark.asyncio
    async def test_autoplay_continues_into_next_section_then_completes(self):
        """Exhausting a section loads the next one; the last one completes."""
        orch = make_orchestrator(sections=[
            make_section("ch1", 2),
            make_section("ch2", 2, start=2),
        ])
        statuses = record_statuses(orch)

        await start_book(orch)

        assert orch.status == "completed"
        assert statuses[-1] == "completed"
        assert orch.active_provider.spoken == [
            "ch1 sentence 0.",
            "ch1 sentence 1.",
            "ch2 sentence 0.",
            "ch2 sentence 1.",
        ]
        assert orch.state.current_section_index == 1
        await orch.close()

    @pytest.mark.asyncio
    async def test_next_at_end_of_queue_stops(self):
        """next() on the last item of the book stops playback."""
        orch = make_orchestrator(auto_end=False, sections=[make_section("ch1", 1)])
        await start_book(orch)

        await orch.next()
        await orch.wait_idle()

        assert orch.status == "stopped"
        await orch.close()

    @pytest.mark.asyncio
    async def test_next_while_paused_starts_new_item(self):
        """next() while paused drops to stopped and starts the new item fresh."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)
        await orch.pause()
        statuses = record_statuses(orch)

        await orch.next()
        await orch.wait_idle()

        assert statuses == ["paused", "stopped", "loading", "playing"]
        assert orch.status == "playing"
        assert orch.active_provider.spoken[-1] == "ch1 sentence 1."
        await orch.close()

    @pytest.mark.asyncio
    async def test_seek_backward_crosses_into_previous_section(self):
        """Seeking back from a section's first item continues from the previous section's end."""
        orch = make_orchestrator(auto_end=False, sections=[
            make_section("ch1", 3),
            make_section("ch2", 2, start=3),
        ])
        await start_book(orch, section_index=1)

        await orch.seek_by_offset(-1)
        await orch.wait_idle()

        assert orch.state.current_section_index == 0
        assert orch.state.current_index == 2
        assert orch.active_provider.spoken[-1] == "ch1 sentence 2."
        await orch.close()

    @pytest.mark.asyncio
    async def test_jump_to_plays_item(self):
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.jump_to(2)
        await orch.wait_idle()

        assert orch.state.current_index == 2
        assert orch.status == "playing"
        await orch.close()


# ============================================================================
# Skip mask
# ============================================================================

class TestSkipMask:
    """Items covered by the skip mask are not narrated."""

    @pytest.mark.asyncio
    async def test_masked_item_is_skipped_on_advance(self):
        """With item 1 masked, finishing item 0 plays item 2."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.set_skip_mask({1})
        orch.active_provider.finish()
        await orch.wait_idle()

        assert orch.state.current_index == 2
        assert orch.active_provider.spoken[-1] == "ch1 sentence 2."
        await orch.close()

    @pytest.mark.asyncio
    async def test_late_mask_from_pipeline_is_applied(self):
        """A mask detected after the queue was built reaches the state."""
        pipeline = StaticContentPipeline()
        pipeline.set_skip_mask("book-1", "ch1", {2})
        orch = make_orchestrator(auto_end=False, pipeline=pipeline)

        await start_book(orch)
        await asyncio.sleep(0.01)
        await orch.wait_idle()

        assert orch.state.queue[2].is_skipped is True
        await orch.close()


class TestTableAdaptations:
    """Spoken table renditions replace their cells in the loaded queue."""

    @pytest.mark.asyncio
    async def test_late_adaptation_from_pipeline_is_applied(self):
        pipeline = StaticContentPipeline()
        pipeline.set_table_adaptations("book-1", "ch1", [
            TableAdaptation(text="A two-cell table.", source_indices=(1, 2))
        ])
        orch = make_orchestrator(auto_end=False, pipeline=pipeline)

        await start_book(orch)
        await asyncio.sleep(0.01)
        await orch.wait_idle()

        assert orch.state.queue[1].text == "A two-cell table."
        assert orch.state.queue[2].is_skipped is True

        orch.active_provider.finish()
        await orch.wait_idle()
        orch.active_provider.finish()
        await orch.wait_idle()
        assert orch.active_provider.spoken == ["ch1 sentence 0.", "A two-cell table."]
        assert orch.status == "completed"
        await orch.close()

    @pytest.mark.asyncio
    async def test_adaptation_for_unloaded_section_is_dropped(self):
        """Adaptations found for a section that was left are not applied to the next one."""
        orch = make_orchestrator(
            auto_end=False,
            sections=[make_section("ch1", 3), make_section("ch2", 3, start=3)]
        )
        await start_book(orch)
        report = orch._adaptations_callback("book-1", "ch1")
        await orch.load_section(1)
        await orch.wait_idle()

        report([TableAdaptation(text="Stale table.", source_indices=(3, 4, 5))])
        await orch.wait_idle()

        assert [item.text for item in orch.state.queue] == [
            "ch2 sentence 0.", "ch2 sentence 1.", "ch2 sentence 2."
        ]
        await orch.close()

    @pytest.mark.asyncio
    async def test_adaptations_by_command(self):
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.apply_table_adaptations([
            TableAdaptation(text="Cells as prose.", root_location_id="ch1-loc-1")
        ])

        assert orch.state.queue[1].text == "Cells as prose."
        assert orch.state.queue[2].text == "ch1 sentence 2."
        await orch.close()


# ============================================================================
# Error policy
# ============================================================================

class TestErrorPolicy:
    """Benign interruptions, provider fallback and platform denial."""

    @pytest.mark.asyncio
    async def test_benign_interruption_is_not_an_error(self):
        """'interrupted' from the provider leaves playback untouched."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)
        errors = []
        orch.subscribe(lambda update: update.error and errors.append(update.error))

        orch.active_provider.emit_error("interrupted")
        await orch.wait_idle()

        assert orch.status == "playing"
        assert orch.last_error is None
        assert errors == []
        await orch.close()

    @pytest.mark.asyncio
    async def test_cloud_failure_falls_back_to_local(self):
        """A failing cloud provider is replaced and the same item retried."""
        orch = make_orchestrator(auto_end=False, settings=PlaybackSettings(provider_id="cloud"))
        errors = []
        orch.subscribe(lambda update: update.error and errors.append(update.error))

        await start_book(orch)

        assert orch.active_provider.provider_id == "local"
        assert orch.active_provider.spoken == ["ch1 sentence 0."]
        assert orch.state.current_index == 0
        assert orch.status == "playing"
        assert errors == ["Engine returned 503"]
        await orch.close()

    @pytest.mark.asyncio
    async def test_local_failure_halts(self):
        """A failing local provider has no fallback: stop and report."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        orch.active_provider.emit_error("synthesis-failed")
        await orch.wait_idle()

        assert orch.status == "stopped"
        assert orch.last_error == "synthesis-failed"
        await orch.close()

    @pytest.mark.asyncio
    async def test_denied_background_audio_halts(self):
        """Refused background playback stops the session and reports it."""
        orch = make_orchestrator(auto_end=False, background_denied=True)

        await start_book(orch)

        assert orch.status == "stopped"
        assert orch.last_error == "Background audio playback is not permitted"
        assert orch.active_provider is None
        await orch.close()

    @pytest.mark.asyncio
    async def test_content_load_failure_plays_announcement(self):
        """An unreadable section is replaced by a spoken announcement."""
        orch = make_orchestrator(auto_end=False, pipeline=BrokenPipeline())

        await start_book(orch)

        assert orch.active_provider.spoken == [CONTENT_LOAD_FAILED_MESSAGE]
        assert orch.state.current_item.is_announcement
        await orch.close()

    @pytest.mark.asyncio
    async def test_unknown_provider_reports_error(self):
        """set_provider with an unknown id keeps the current provider."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.set_provider("nope")

        assert orch.settings.provider_id == "local"
        assert "Unknown provider" in orch.last_error
        await orch.close()


# ============================================================================
# Reading history
# ============================================================================

class TestReadingHistory:
    """Completed and interrupted items are reported to the repository."""

    @pytest.mark.asyncio
    async def test_completed_items_recorded_without_announcements(self):
        """Pre-roll announcements never reach the reading history."""
        repo = make_repository()
        orch = make_orchestrator(
            sections=[make_section("ch1", 2)],
            settings=PlaybackSettings(preroll_enabled=True),
            repository=repo
        )

        await start_book(orch)

        calls = repo.update_reading_history.call_args_list
        assert [c.args[1] for c in calls] == ["ch1-loc-0", "ch1-loc-1"]
        assert all(c.kwargs["completed"] for c in calls)
        assert orch.active_provider.spoken[0].startswith("Ch1. Estimated reading time")
        await orch.close()

    @pytest.mark.asyncio
    async def test_pause_records_interrupted_item(self):
        """Leaving an active state records the current item as not completed."""
        repo = make_repository()
        orch = make_orchestrator(auto_end=False, repository=repo)
        await start_book(orch)

        await orch.pause()

        repo.update_reading_history.assert_called_once_with(
            "book-1", "ch1-loc-0", source="tts", label="ch1 sentence 0.", completed=False
        )
        await orch.close()

    @pytest.mark.asyncio
    async def test_preview_provider_records_nothing(self):
        """Narration through the preview provider is not history."""
        repo = make_repository()
        orch = make_orchestrator(settings=PlaybackSettings(provider_id="preview"), repository=repo)

        await start_book(orch)

        assert orch.status == "completed"
        repo.update_reading_history.assert_not_called()
        await orch.close()

    @pytest.mark.asyncio
    async def test_history_failure_does_not_stop_playback(self):
        repo = make_repository()
        repo.update_reading_history.side_effect = RuntimeError("database is locked")
        orch = make_orchestrator(repository=repo)

        await start_book(orch)

        assert orch.status == "completed"
        await orch.close()


# ============================================================================
# Smart resume
# ============================================================================

class TestSmartResume:
    """Rewind on resume after a pause."""

    @pytest.mark.asyncio
    async def test_short_pause_rewinds_items(self):
        """Ten minutes away rewinds the default two items."""
        clock = ManualClock()
        orch = make_orchestrator(auto_end=False, sections=[make_section("ch1", 6)], clock=clock)
        await start_book(orch)
        await orch.jump_to(4)
        await orch.pause()
        clock.advance(600)

        await orch.resume()
        await orch.wait_idle()

        assert orch.state.current_index == 2
        assert orch.active_provider.spoken[-1] == "ch1 sentence 2."
        await orch.close()

    @pytest.mark.asyncio
    async def test_quick_resume_keeps_position(self):
        orch = make_orchestrator(auto_end=False, sections=[make_section("ch1", 6)])
        await start_book(orch)
        await orch.jump_to(4)
        await orch.pause()

        await orch.resume()
        await orch.wait_idle()

        assert orch.state.current_index == 4
        await orch.close()

    @pytest.mark.asyncio
    async def test_disabled_smart_resume_keeps_position(self):
        """The preference switches rewinding off."""
        clock = ManualClock()
        orch = make_orchestrator(
            auto_end=False,
            sections=[make_section("ch1", 6)],
            settings=PlaybackSettings(smart_resume_enabled=False),
            clock=clock
        )
        await start_book(orch)
        await orch.jump_to(4)
        await orch.pause()
        clock.advance(600)

        await orch.resume()
        await orch.wait_idle()

        assert orch.state.current_index == 4
        await orch.close()


class TestSessionRestore:
    """First play after set_book picks up the persisted session."""

    @pytest.mark.asyncio
    async def test_snapshot_queue_and_position_are_restored(self):
        repo = make_repository()
        repo.load_last_snapshot.return_value = PersistedSnapshot(
            book_id="book-1",
            queue=make_chapter_queue("ch1", 4),
            current_index=2,
            current_section_index=0
        )
        orch = make_orchestrator(auto_end=False, sections=[make_section("ch1", 4)], repository=repo)

        await orch.set_book("book-1")
        assert orch.state.current_index == 2
        await orch.play()
        await orch.wait_idle()

        assert orch.status == "playing"
        assert orch.active_provider.spoken == ["ch1 sentence 2."]
        await orch.close()

    @pytest.mark.asyncio
    async def test_last_played_location_is_looked_up(self):
        """A snapshot at index 0 defers to the last played location."""
        repo = make_repository()
        repo.load_last_snapshot.return_value = PersistedSnapshot(
            book_id="book-1",
            queue=make_chapter_queue("ch1", 4),
            current_index=0,
            current_section_index=0
        )
        repo.get_playback_state.return_value = {"last_played_location_id": "ch1-loc-3"}
        orch = make_orchestrator(auto_end=False, sections=[make_section("ch1", 4)], repository=repo)

        await orch.set_book("book-1")
        await orch.play()
        await orch.wait_idle()

        repo.get_playback_state.assert_called_with("book-1")
        assert orch.state.current_index == 3
        assert orch.active_provider.spoken == ["ch1 sentence 3."]
        await orch.close()

    @pytest.mark.asyncio
    async def test_persisted_pause_applies_smart_resume(self):
        """A session left paused ten minutes ago rewinds two items."""
        clock = ManualClock()
        repo = make_repository()
        repo.load_last_snapshot.return_value = PersistedSnapshot(
            book_id="book-1",
            queue=make_chapter_queue("ch1", 6),
            current_index=4,
            current_section_index=0,
            last_pause_time=clock.now - 600
        )
        orch = make_orchestrator(
            auto_end=False, sections=[make_section("ch1", 6)], repository=repo, clock=clock
        )

        await orch.set_book("book-1")
        await orch.play()
        await orch.wait_idle()

        assert orch.state.current_index == 2
        assert orch.state.last_pause_time is None
        assert orch.active_provider.spoken == ["ch1 sentence 2."]
        await orch.close()


# ============================================================================
# Settings and preview
# ============================================================================

class TestSettings:
    """Speed, voice and preview."""

    @pytest.mark.asyncio
    async def test_set_speed_clamps(self):
        """Speeds outside the supported range are clamped."""
        orch = make_orchestrator()

        await orch.set_speed(10.0)
        assert orch.settings.speed == PLAYBACK_MAX_SPEED

        await orch.set_speed(0.01)
        assert orch.settings.speed == PLAYBACK_MIN_SPEED
        await orch.close()

    @pytest.mark.asyncio
    async def test_speed_change_while_playing_restarts_item(self):
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.set_speed(1.5)
        await orch.wait_idle()

        assert orch.active_provider.spoken == ["ch1 sentence 0.", "ch1 sentence 0."]
        assert orch.status == "playing"
        await orch.close()

    @pytest.mark.asyncio
    async def test_settings_are_persisted(self):
        store = Mock()
        orch = make_orchestrator(settings_store=store)

        await orch.set_voice("v1")
        orch.set_preroll_enabled(True)

        store.update_playback_settings.assert_any_call(voice_id="v1")
        store.update_playback_settings.assert_any_call(preroll_enabled=True)
        await orch.close()

    @pytest.mark.asyncio
    async def test_preview_ends_in_stopped(self):
        """A preview utterance stops when it ends and leaves the queue alone."""
        orch = make_orchestrator(auto_end=False)
        await start_book(orch)

        await orch.preview("Hello there")
        await orch.wait_idle()
        assert orch.status == "playing"

        orch.active_provider.finish()
        await orch.wait_idle()

        assert orch.status == "stopped"
        assert orch.state.current_index == 0
        await orch.close()

    @pytest.mark.asyncio
    async def test_get_voices_activates_provider(self):
        orch = make_orchestrator()

        voices = await orch.get_voices()

        assert [v.id for v in voices] == ["v1"]
        await orch.close()

    @pytest.mark.asyncio
    async def test_lexicon_rules_applied_before_provider(self):
        """Text reaches the provider after pronunciation substitution."""
        from datetime import datetime
        from models.pronunciation_models import LexiconRule

        rule = LexiconRule(
            id="r1", pattern="sentence", replacement="line",
            created_at=datetime.now(), updated_at=datetime.now()
        )
        lexicon = Mock()
        lexicon.get_rules_for_book.return_value = [rule]
        orch = make_orchestrator(auto_end=False, lexicon=lexicon)

        await start_book(orch)

        assert orch.active_provider.spoken == ["ch1 line 0."]
        await orch.close()
