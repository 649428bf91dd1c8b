"""
Playback Orchestrator - state machine driving the active speech provider

States:
    stopped -> loading -> playing <-> paused
    any -> stopped (explicit stop)
    playing -> completed (queue exhausted, no further section)

Concurrency:
    Every public command is appended to one TaskSequencer and returns the
    task's future. Provider events are pumped from the active provider's
    channel by one listener task and re-enqueued on the same sequencer, so a
    provider 'end' racing a user command can never interleave with it.
    Events from a provider that is no longer active are dropped, and events
    of an utterance that was superseded (stop, restart, new item) are dropped
    by comparing the utterance token captured when the event was pumped.

Error policy:
    Nothing is raised across the command API. Failures are reported to
    subscribers as StatusUpdate.error:
    - benign interruption (our own stop/restart): ignored
    - provider failure: swap to the fallback provider and retry the item once
    - persistence failure: logged, playback continues
    - content-load failure: announcement item instead of the section
    - platform capability denial: halt (stopped) and report

Usage:
    orchestrator = PlaybackOrchestrator(
        state=PlaybackStateManager(store=repo),
        provider_manager=ProviderManager(),
        content_pipeline=pipeline,
        repository=repo,
    )
    await orchestrator.start()
    await orchestrator.set_book("book-1")
    await orchestrator.load_section(0)
"""
import asyncio
import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from loguru import logger

from config import FALLBACK_PROVIDER_ID, PLAYBACK_MIN_SPEED, PLAYBACK_MAX_SPEED
from core.alignment_tracker import AlignmentTracker
from core.exceptions import error_message
from core.playback_state import PlaybackStateManager, PlaybackStateSnapshot
from core.pronunciation_transformer import PronunciationTransformer, get_pronunciation_transformer
from core.provider_exceptions import (
    ContentLoadError,
    PlatformCapabilityError,
    VoiceDownloadError,
    is_benign_interruption,
)
from core.smart_resume import DEFAULT_POLICY, ResumeTarget, SmartResumePolicy, apply_smart_resume
from core.task_sequencer import TaskSequencer
from models.playback_models import (
    DownloadProgress,
    PlaybackSettings,
    ProviderEvent,
    QueueItem,
    SectionInfo,
    StatusUpdate,
    TableAdaptation,
    Voice,
)
from services.content_pipeline import (
    CONTENT_LOAD_FAILED_MESSAGE,
    BaseContentPipeline,
    StaticContentPipeline,
    make_announcement,
)
from services.platform_integration import MediaMetadata, PlatformIntegration
from services.provider_manager import ProviderManager, select_fallback_provider
from services.providers.base_provider import BaseSpeechProvider


ACTIVE_STATUSES = ("playing", "loading")

StatusListener = Callable[[StatusUpdate], None]
PositionListener = Callable[[float, float, float], None]


class PlaybackOrchestrator:
    """
    Playback state machine for one reader session.

    Attributes:
        status: Current PlaybackStatus
        state: Queue / position / timeline owner
        provider_manager: Creates and tracks the active provider
        sequencer: FIFO chain every mutation runs on
        settings: Voice, speed, provider and feature preferences
        last_error: Message of the last reported failure
    """

    def __init__(
        self,
        state: Optional[PlaybackStateManager] = None,
        provider_manager: Optional[ProviderManager] = None,
        content_pipeline: Optional[BaseContentPipeline] = None,
        repository=None,
        lexicon=None,
        transformer: Optional[PronunciationTransformer] = None,
        tracker: Optional[AlignmentTracker] = None,
        platform: Optional[PlatformIntegration] = None,
        settings: Optional[PlaybackSettings] = None,
        settings_store=None,
        sequencer: Optional[TaskSequencer] = None,
        smart_resume_policy: SmartResumePolicy = DEFAULT_POLICY,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            state: State manager (its store is used for queue persistence)
            provider_manager: Provider registry/factory
            content_pipeline: Source of sections and narratable queues
            repository: Playback persistence (snapshots, playback state, history)
            lexicon: Rule source with get_rules_for_book(book_id)
            transformer: Applies lexicon rules before text reaches a provider
            tracker: Highlight synchronization with the visual reader
            platform: Media session / background audio
            settings: Initial preferences
            settings_store: Object with update_playback_settings(**changes); None = not persisted
            sequencer: Task chain (one per orchestrator)
            smart_resume_policy: Rewind thresholds and amounts
            clock: Epoch-seconds clock used for pause durations
        """
        self.state = state or PlaybackStateManager(store=repository, clock=clock)
        self.provider_manager = provider_manager or ProviderManager()
        self.content_pipeline = content_pipeline or StaticContentPipeline()
        self.repository = repository
        self.lexicon = lexicon
        self.transformer = transformer or get_pronunciation_transformer()
        self.tracker = tracker or AlignmentTracker()
        self.platform = platform or PlatformIntegration()
        self.settings = settings or PlaybackSettings()
        self.settings_store = settings_store
        self.sequencer = sequencer or TaskSequencer("playback")
        self.smart_resume_policy = smart_resume_policy
        self._clock = clock

        self.status = "stopped"
        self.last_error: Optional[str] = None
        self.playlist: List[SectionInfo] = []

        self.state.set_speed(self.settings.speed)
        self.platform.background_mode = self.settings.background_audio_mode

        self._listeners: List[StatusListener] = []
        self._position_listeners: List[PositionListener] = []
        self._lexicon_rules: Optional[list] = None
        self._utterance_id = 0
        self._previewing = False
        self._resumable_utterance = False
        # Utterance ended after pause() with no item left to advance to
        self._ended_while_paused = False
        self._paused_provider_time = 0.0
        self._session_restored = False
        self._pump_task: Optional[asyncio.Task] = None
        self._pumped_provider: Optional[BaseSpeechProvider] = None
        self._background_tasks: Set[asyncio.Task] = set()

        self._unsubscribe_state = self.state.subscribe(self._on_state_change)

    # ------------------------------------------------------------------
    # Subscription API
    # ------------------------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a status listener, called on every transition.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_position(self, listener: PositionListener) -> Callable[[], None]:
        """Register a listener for (position, duration, speed) updates."""
        self._position_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._position_listeners:
                self._position_listeners.remove(listener)

        return unsubscribe

    @property
    def book_id(self) -> Optional[str]:
        return self.state.book_id

    @property
    def active_provider(self) -> Optional[BaseSpeechProvider]:
        return self.provider_manager.active

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "asyncio.Future[Any]":
        """Activate the configured provider and bind media session actions."""
        self.platform.bind_actions(
            on_play=self.play,
            on_pause=self.pause,
            on_stop=self.stop,
            on_prev=self.prev,
            on_next=self.next,
            on_seek=self.seek_by_offset,
            on_seek_to=self.seek_to_time
        )
        return self._enqueue(self._ensure_provider, "start")

    async def close(self) -> None:
        """Stop playback and release every resource."""
        await self.stop()
        await self._stop_pump()
        await self.sequencer.close()

        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self.provider_manager.close()
        await self.content_pipeline.close()
        self._unsubscribe_state()
        logger.info("[PlaybackOrchestrator] Closed")

    async def wait_idle(self) -> None:
        """Wait until queued commands and pending provider events have been handled."""
        while True:
            await self.sequencer.drain()
            await asyncio.sleep(0)
            provider = self.provider_manager.active
            events_pending = provider is not None and not provider.events.empty()
            if self.sequencer.pending == 0 and not self.sequencer.is_busy and not events_pending:
                return

    # ------------------------------------------------------------------
    # Commands (each runs on the task chain)
    # ------------------------------------------------------------------

    def play(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._play, "play")

    def pause(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._pause, "pause")

    def resume(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._resume, "resume")

    def stop(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._stop_internal, "stop")

    def next(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._next, "next")

    def prev(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._prev, "prev")

    def seek_by_offset(self, offset: int) -> "asyncio.Future[Any]":
        """Step one item forward (offset > 0) or back (offset < 0), crossing sections."""
        return self._enqueue(partial(self._seek_by_offset, offset), "seek")

    def seek_to_time(self, seconds: float) -> "asyncio.Future[Any]":
        """Seek on the section's virtual timeline."""
        return self._enqueue(partial(self._seek_to_time, seconds), "seek_to_time")

    def jump_to(self, index: int) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._jump_to, index), "jump_to")

    def set_speed(self, speed: float) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._set_speed, speed), "set_speed")

    def set_voice(self, voice_id: Optional[str]) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._set_voice, voice_id), "set_voice")

    def set_provider(self, provider_id: str, **config) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._set_provider, provider_id, **config), "set_provider")

    def set_book(self, book_id: Optional[str]) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._set_book, book_id), "set_book")

    def load_section(self, section_index: int, auto_play: bool = True) -> "asyncio.Future[Any]":
        return self._enqueue(
            partial(self._load_section_internal, section_index, auto_play),
            "load_section"
        )

    def load_section_by_id(self, section_id: str, auto_play: bool = True) -> "asyncio.Future[Any]":
        return self._enqueue(
            partial(self._load_section_by_id, section_id, auto_play),
            "load_section_by_id"
        )

    def skip_to_next_section(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._advance_section, "next_section")

    def skip_to_previous_section(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._skip_to_previous_section, "previous_section")

    def set_skip_mask(self, raw_indices) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._set_skip_mask, set(raw_indices)), "set_skip_mask")

    def apply_table_adaptations(self, adaptations: List[TableAdaptation]) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._apply_table_adaptations, list(adaptations)), "apply_table_adaptations")

    def set_queue(self, items: List[QueueItem], start_index: int = 0) -> "asyncio.Future[Any]":
        return self._enqueue(partial(self._set_queue, list(items), start_index), "set_queue")

    def preview(self, text: str) -> "asyncio.Future[Any]":
        """Speak a sample with the current voice, outside the queue."""
        return self._enqueue(partial(self._preview, text), "preview")

    def get_voices(self) -> "asyncio.Future[Any]":
        return self._enqueue(self._get_voices, "get_voices")

    # ------------------------------------------------------------------
    # Preferences and unchained operations
    # ------------------------------------------------------------------

    def set_preroll_enabled(self, enabled: bool) -> None:
        """Takes effect on the next section load."""
        self.settings.preroll_enabled = enabled
        self._persist_settings(preroll_enabled=enabled)

    def set_smart_resume_enabled(self, enabled: bool) -> None:
        self.settings.smart_resume_enabled = enabled
        self._persist_settings(smart_resume_enabled=enabled)

    def set_reader_visible(self, visible: bool) -> None:
        """Foreground/background transition of the reader (catch-up only, no state change)."""
        self.tracker.set_visible(visible)

    def invalidate_lexicon(self) -> None:
        """Reload lexicon rules before the next utterance."""
        self._lexicon_rules = None

    async def download_voice(self, voice_id: str) -> bool:
        """
        Install voice assets on the active provider.

        Runs outside the task chain so that playback commands are not blocked
        by a long download. Progress arrives as download_progress updates.

        Returns:
            True on success; failures are reported to subscribers
        """
        provider = self.provider_manager.active
        if provider is None:
            provider = await self._enqueue(self._ensure_provider, "ensure_provider")
        if provider is None:
            return False
        try:
            await provider.download_voice(voice_id)
        except VoiceDownloadError as e:
            logger.error(f"[PlaybackOrchestrator] Voice download failed: {e}")
            self._report_error(error_message(e))
            return False
        return True

    def get_state(self) -> Dict[str, Any]:
        """Plain snapshot of playback state for the API layer."""
        item = self.state.current_item
        provider = self.provider_manager.active
        provider_time = provider.current_time() if provider is not None and self.status in ACTIVE_STATUSES else 0.0
        return {
            "status": self.status,
            "book_id": self.book_id,
            "provider_id": provider.provider_id if provider is not None else self.settings.provider_id,
            "voice_id": self.settings.voice_id,
            "speed": self.settings.speed,
            "active_location_id": item.location_id if item else None,
            "current_index": self.state.current_index,
            "current_section_index": self.state.current_section_index,
            "total_duration": self.state.get_total_duration(),
            "remaining_duration": self.state.get_remaining_duration(provider_time),
            "queue": list(self.state.queue),
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Command implementations (run on the chain)
    # ------------------------------------------------------------------

    async def _play(self) -> None:
        if self.status == "paused":
            await self._resume()
            return
        if self.status in ACTIVE_STATUSES and not self._previewing:
            return

        await self._restore_session()

        if self.state.current_item is None:
            logger.debug("[PlaybackOrchestrator] Nothing to play")
            self._set_status("stopped")
            return

        await self._play_current()

    async def _pause(self) -> None:
        if self._previewing:
            await self._stop_internal()
            return
        if self.status not in ACTIVE_STATUSES:
            return

        provider = self.provider_manager.active
        resumable = provider is not None and provider.supports_resume and self.status == "playing"
        self._paused_provider_time = provider.current_time() if provider is not None else 0.0

        if resumable:
            await self._call_provider(provider.pause(), "pause")
        else:
            self._invalidate_utterance()
            if provider is not None:
                await self._call_provider(provider.stop(), "stop")
        self._resumable_utterance = resumable

        self._set_status("paused")
        self.state.save_playback_state("paused")
        self.state.persist_queue()

    async def _resume(self) -> None:
        if self.status != "paused":
            if self.status == "stopped":
                await self._play()
            return

        self._session_restored = True
        provider = await self._ensure_provider()
        target = self._compute_resume_target(provider)
        self.state.clear_pause_time()

        if target.rewound or target.reset_to_start:
            logger.info(
                f"[PlaybackOrchestrator] Smart resume: index {self.state.current_index} → {target.index}"
                f"{' (section start)' if target.reset_to_start else ''}"
            )
            self.state.jump_to(target.index)
            self._resumable_utterance = False

        if self._ended_while_paused:
            self._ended_while_paused = False
            if not (target.rewound or target.reset_to_start):
                await self._finish_queue()
                return

        if self._resumable_utterance and provider.supports_resume:
            self._resumable_utterance = False
            if target.seconds > 0:
                await self._call_provider(
                    provider.seek(max(0.0, provider.current_time() - target.seconds)),
                    "seek"
                )
            if not self._set_status("playing"):
                await self._call_provider(provider.stop(), "stop")
                return
            try:
                await provider.resume()
            except Exception as e:
                await self._handle_provider_failure(provider, e)
            return

        await self._play_current()

    async def _stop_internal(self) -> None:
        """Idempotent stop: persist, clear highlight, release platform claims, stop provider."""
        self._invalidate_utterance()
        self._resumable_utterance = False
        self._ended_while_paused = False
        self._paused_provider_time = 0.0

        self.state.persist_queue()
        self.state.save_playback_state("stopped")
        self.tracker.clear()

        if self.status != "stopped":
            self._set_status("stopped")
        self._previewing = False
        self._lexicon_rules = None
        self.platform.stop()

        provider = self.provider_manager.active
        if provider is not None:
            await self._call_provider(provider.stop(), "stop")

    async def _next(self) -> None:
        if not self.state.has_next():
            await self._stop_internal()
            return
        self.state.next()
        if self.status == "paused":
            # Never silently resume: drop to stopped, then start the new item fresh
            self._resumable_utterance = False
            self._set_status("stopped")
        await self._play_current()

    async def _prev(self) -> None:
        if not self.state.has_prev():
            return
        self.state.prev()
        if self.status == "paused":
            self._resumable_utterance = False
            self._set_status("stopped")
        await self._play_current()

    async def _seek_by_offset(self, offset: int) -> None:
        if offset > 0:
            if self.state.has_next():
                self.state.next()
                await self._play_current()
            else:
                await self._advance_section()
        elif offset < 0:
            if self.state.has_prev():
                self.state.prev()
                await self._play_current()
            else:
                await self._retreat_section()

    async def _seek_to_time(self, seconds: float) -> None:
        was_playing = self.status in ACTIVE_STATUSES
        changed = self.state.seek_to_time(seconds)

        if changed:
            self._resumable_utterance = False
            if was_playing:
                await self._play_current()
            return

        # Same item: time-addressable providers seek within the utterance
        provider = self.provider_manager.active
        if was_playing and provider is not None and provider.is_time_addressable:
            offset = max(0.0, seconds - self.state.time_at_index(self.state.current_index))
            await self._call_provider(provider.seek(offset), "seek")

    async def _jump_to(self, index: int) -> None:
        if self.state.jump_to(index):
            await self._stop_internal()
            await self._play_current()

    async def _set_speed(self, speed: float) -> None:
        speed = max(PLAYBACK_MIN_SPEED, min(PLAYBACK_MAX_SPEED, float(speed)))
        self.settings.speed = speed
        self.state.set_speed(speed)
        self._persist_settings(speed=speed)
        if self.status in ACTIVE_STATUSES and not self._previewing:
            await self._play_current()
        else:
            self._resumable_utterance = False

    async def _set_voice(self, voice_id: Optional[str]) -> None:
        self.settings.voice_id = voice_id
        self._persist_settings(voice_id=voice_id)
        if self.status in ACTIVE_STATUSES and not self._previewing:
            await self._play_current()
        else:
            self._resumable_utterance = False

    async def _set_provider(self, provider_id: str, **config) -> None:
        await self._stop_internal()
        try:
            await self._activate_provider(provider_id, **config)
        except ValueError as e:
            logger.error(f"[PlaybackOrchestrator] {e}")
            self._report_error(error_message(e))
            return
        self.settings.provider_id = provider_id
        self._persist_settings(provider_id=provider_id)

    async def _set_book(self, book_id: Optional[str]) -> None:
        if book_id == self.state.book_id:
            # Same book: only pick up sections registered since
            if book_id:
                await self._load_playlist(book_id)
            return

        if self.status != "stopped":
            await self._stop_internal()

        self.state.set_book_id(book_id)
        self._session_restored = False
        self._lexicon_rules = None
        self.playlist = []

        if not book_id:
            return

        await self._load_playlist(book_id)

        snapshot = None
        if self.repository is not None:
            try:
                snapshot = self.repository.load_last_snapshot(book_id)
            except Exception as e:
                logger.warning(f"[PlaybackOrchestrator] Failed to load snapshot for {book_id}: {e}")

        if snapshot is not None and snapshot.queue:
            self.state.restore(snapshot)
            logger.info(
                f"[PlaybackOrchestrator] Restored {book_id}: section {snapshot.current_section_index}, "
                f"item {snapshot.current_index}/{len(snapshot.queue)}"
            )

    async def _load_playlist(self, book_id: str) -> None:
        try:
            self.playlist = list(await self.content_pipeline.get_sections(book_id))
        except Exception as e:
            logger.error(f"[PlaybackOrchestrator] Failed to load playlist for {book_id}: {e}")

    async def _load_section_by_id(self, section_id: str, auto_play: bool) -> bool:
        for index, section in enumerate(self.playlist):
            if section.section_id == section_id:
                if (
                    not auto_play
                    and self.state.current_section_index == index
                    and self.state.queue
                ):
                    return True
                return await self._load_section_internal(index, auto_play)
        logger.warning(f"[PlaybackOrchestrator] Unknown section {section_id}")
        return False

    async def _load_section_internal(self, section_index: int, auto_play: bool) -> bool:
        """
        Load a section's queue and optionally start it.

        Returns:
            False if the section does not exist or produced no queue
        """
        book_id = self.state.book_id
        if not book_id or not 0 <= section_index < len(self.playlist):
            return False

        section = self.playlist[section_index]
        queue = await self._build_queue(book_id, section, section_index)
        if not queue:
            return False

        if auto_play:
            provider = self.provider_manager.active
            self._invalidate_utterance()
            if provider is not None:
                await self._call_provider(provider.stop(), "stop")
            self.state.save_playback_state("stopped")
            if not self._set_status("loading"):
                return True
        else:
            await self._stop_internal()

        self._resumable_utterance = False
        self.state.set_queue(queue, 0, section_index)

        if auto_play:
            await self._play_current()
        return True

    async def _build_queue(self, book_id: str, section: SectionInfo, section_index: int) -> List[QueueItem]:
        try:
            return await self.content_pipeline.load_narratable_queue(
                book_id,
                section,
                section_index,
                preroll_enabled=self.settings.preroll_enabled,
                speed=self.settings.speed,
                on_mask_found=self._mask_callback(book_id, section.section_id),
                on_adaptations_found=self._adaptations_callback(book_id, section.section_id)
            )
        except ContentLoadError as e:
            logger.warning(f"[PlaybackOrchestrator] {e}; substituting announcement")
            return [make_announcement(CONTENT_LOAD_FAILED_MESSAGE, section.title)]

    def _is_section_loaded(self, book_id: str, section_id: str) -> bool:
        if self.state.book_id != book_id:
            return False
        index = self.state.current_section_index
        return 0 <= index < len(self.playlist) and self.playlist[index].section_id == section_id

    def _mask_callback(self, book_id: str, section_id: str) -> Callable[[Set[int]], None]:
        """Late skip masks are applied only if the same section is still loaded."""
        def on_mask_found(mask: Set[int]) -> None:
            async def apply() -> None:
                if self._is_section_loaded(book_id, section_id):
                    self.state.apply_skipped_mask(mask)

            self._enqueue(apply, "apply_mask")

        return on_mask_found

    def _adaptations_callback(
        self, book_id: str, section_id: str
    ) -> Callable[[List[TableAdaptation]], None]:
        def on_adaptations_found(adaptations: List[TableAdaptation]) -> None:
            async def apply() -> None:
                if not self._is_section_loaded(book_id, section_id):
                    logger.debug(f"[PlaybackOrchestrator] Dropping table adaptations for unloaded section {section_id}")
                    return
                if self.state.apply_table_adaptations(adaptations):
                    logger.debug(f"[PlaybackOrchestrator] Applied {len(adaptations)} table adaptation(s) to {section_id}")

            self._enqueue(apply, "apply_adaptations")

        return on_adaptations_found

    async def _advance_section(self) -> bool:
        """Load the next section that produces a queue. False if none is left."""
        if not self.state.book_id or not self.playlist:
            return False

        section_index = self.state.current_section_index + 1
        while section_index < len(self.playlist):
            if await self._load_section_internal(section_index, True):
                return True
            section_index += 1
        return False

    async def _skip_to_previous_section(self) -> bool:
        if not self.state.book_id or not self.playlist:
            return False
        section_index = self.state.current_section_index - 1
        while section_index >= 0:
            if await self._load_section_internal(section_index, True):
                return True
            section_index -= 1
        return False

    async def _retreat_section(self) -> bool:
        """Load the previous section and continue from its last item."""
        if not self.state.book_id or not self.playlist:
            return False
        section_index = self.state.current_section_index - 1
        while section_index >= 0:
            if await self._load_section_internal(section_index, False):
                self.state.jump_to_end()
                await self._play_current()
                return True
            section_index -= 1
        return False

    async def _set_skip_mask(self, raw_indices: Set[int]) -> None:
        self.state.apply_skipped_mask(raw_indices)

    async def _apply_table_adaptations(self, adaptations: List[TableAdaptation]) -> bool:
        return self.state.apply_table_adaptations(adaptations)

    async def _set_queue(self, items: List[QueueItem], start_index: int) -> None:
        if self.state.is_identical_to(items):
            self.state.set_queue(items, start_index, self.state.current_section_index)
            return
        await self._stop_internal()
        self.state.set_queue(items, start_index, self.state.current_section_index)

    async def _preview(self, text: str) -> None:
        await self._stop_internal()
        provider = await self._ensure_provider()
        self._previewing = True
        if not self._set_status("playing"):
            self._previewing = False
            return

        self._begin_utterance()
        try:
            await provider.play(text, self.settings.voice_id, self.settings.speed)
        except Exception as e:
            logger.error(f"[PlaybackOrchestrator] Preview failed: {e}")
            self._set_status("stopped")
            self._previewing = False
            self._report_error(error_message(e))

    async def _get_voices(self) -> List[Voice]:
        await self._ensure_provider()
        return await self.provider_manager.get_voices()

    # ------------------------------------------------------------------
    # Playback core
    # ------------------------------------------------------------------

    async def _play_current(self) -> None:
        """Hand the current item to the active provider."""
        item = self.state.current_item
        if item is None:
            self._set_status("stopped")
            return

        if item.is_skipped:
            if not self.state.next():
                await self._finish_queue()
                return
            item = self.state.current_item

        if self.status != "playing":
            if not self._set_status("loading"):
                return

        provider = await self._ensure_provider()
        text = self._prepare_text(item.text)

        self._begin_utterance()
        self._resumable_utterance = False
        self._ended_while_paused = False
        self._previewing = False
        self.tracker.set_active_location(item.location_id)
        self._update_media_metadata(item)
        self.state.persist_queue()

        try:
            await provider.play(text, self.settings.voice_id, self.settings.speed)
        except Exception as e:
            await self._handle_provider_failure(provider, e)
            return

        self._preload_next(provider)

    async def _finish_queue(self) -> None:
        """End of queue: continue into the next section or complete."""
        if await self._advance_section():
            return
        logger.info("[PlaybackOrchestrator] Reached end of book")
        self.tracker.clear()
        self.state.save_playback_state("completed")
        self._set_status("completed")

    def _prepare_text(self, text: str) -> str:
        """Apply lexicon rules (cached until the next pause/stop)."""
        if self._lexicon_rules is None:
            self._lexicon_rules = self._load_lexicon_rules()
        if not self._lexicon_rules:
            return text
        return self.transformer.apply_rules(text, self._lexicon_rules, self.state.book_id).transformed_text

    def _load_lexicon_rules(self) -> list:
        if self.lexicon is None:
            return []
        try:
            return list(self.lexicon.get_rules_for_book(self.state.book_id))
        except Exception as e:
            logger.warning(f"[PlaybackOrchestrator] Failed to load lexicon rules: {e}")
            return []

    def _preload_next(self, provider: BaseSpeechProvider) -> None:
        item = self.state.next_visible_item()
        if item is None:
            return
        text = self._prepare_text(item.text)
        task = asyncio.create_task(provider.preload(text, self.settings.voice_id, self.settings.speed))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _compute_resume_target(self, provider: BaseSpeechProvider) -> ResumeTarget:
        last_pause = self.state.last_pause_time
        elapsed = None if last_pause is None else self._clock() - last_pause
        return apply_smart_resume(
            self.state.current_index,
            elapsed,
            provider.is_time_addressable,
            position_seconds=self.state.get_current_position(self._paused_provider_time),
            index_at_time=self.state.index_at_time,
            enabled=self.settings.smart_resume_enabled,
            policy=self.smart_resume_policy
        )

    async def _restore_session(self) -> None:
        """
        First play after set_book: go back to the last played location and
        apply smart resume if the session was left paused.
        """
        if self._session_restored or not self.state.book_id or self.status != "stopped":
            return
        self._session_restored = True

        if self.repository is not None and self.state.current_index == 0:
            try:
                record = self.repository.get_playback_state(self.state.book_id)
            except Exception as e:
                logger.warning(f"[PlaybackOrchestrator] Failed to restore playback state: {e}")
                record = None
            location_id = record.get("last_played_location_id") if record else None
            if location_id:
                for index, item in enumerate(self.state.queue):
                    if item.location_id == location_id:
                        self.state.jump_to(index)
                        break

        if self.state.last_pause_time is not None and self.state.queue:
            provider = await self._ensure_provider()
            target = self._compute_resume_target(provider)
            self.state.clear_pause_time()
            if target.rewound or target.reset_to_start:
                self.state.jump_to(target.index)

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def _ensure_provider(self) -> BaseSpeechProvider:
        provider = self.provider_manager.active
        if provider is not None:
            return provider
        provider_id = self.settings.provider_id
        if not self.provider_manager.is_known_provider(provider_id):
            logger.warning(
                f"[PlaybackOrchestrator] Unknown provider '{provider_id}', using '{FALLBACK_PROVIDER_ID}'"
            )
            provider_id = FALLBACK_PROVIDER_ID
        return await self._activate_provider(provider_id)

    async def _activate_provider(self, provider_id: str, **config) -> BaseSpeechProvider:
        """
        Raises:
            ValueError: Unknown provider id
        """
        provider = await self.provider_manager.set_provider(provider_id, **config)
        self._resumable_utterance = False
        await self._start_pump(provider)
        return provider

    async def _start_pump(self, provider: BaseSpeechProvider) -> None:
        if self._pumped_provider is provider and self._pump_task is not None and not self._pump_task.done():
            return
        await self._stop_pump()
        self._pumped_provider = provider
        self._pump_task = asyncio.create_task(
            self._pump_events(provider),
            name=f"PlaybackOrchestrator:events:{provider.provider_id}"
        )

    async def _stop_pump(self) -> None:
        task = self._pump_task
        self._pump_task = None
        self._pumped_provider = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _pump_events(self, provider: BaseSpeechProvider) -> None:
        """Move events from the provider channel onto the task chain."""
        try:
            while True:
                event = await provider.events.get()
                token = self._utterance_id
                self._enqueue(
                    partial(self._handle_provider_event, provider, event, token),
                    f"event:{event.type}"
                )
        except asyncio.CancelledError:
            logger.debug(f"[PlaybackOrchestrator] Event pump for {provider.provider_id} stopped")
            raise

    async def _handle_provider_event(self, provider: BaseSpeechProvider, event: ProviderEvent, token: int) -> None:
        if provider is not self.provider_manager.active:
            logger.debug(f"[PlaybackOrchestrator] Dropping {event.type} from inactive provider {provider.provider_id}")
            return

        if event.type == "download-progress":
            self._notify(download_progress=DownloadProgress(
                voice_id=event.voice_id or "",
                percent=event.percent or 0.0,
                status=event.message or ""
            ))
            return

        if token != self._utterance_id:
            logger.trace(f"[PlaybackOrchestrator] Dropping stale {event.type}")
            return

        if event.type == "start":
            if self.status == "loading":
                self._set_status("playing")
        elif event.type == "end":
            await self._on_utterance_end()
        elif event.type == "error":
            await self._handle_provider_failure(provider, event.error)
        elif event.type == "boundary":
            self.tracker.on_boundary(event.char_index)
        elif event.type == "meta":
            self.tracker.on_meta(event.alignment)
        elif event.type == "timeupdate":
            self.tracker.on_timeupdate(event.time)
            self._update_position(event.time or 0.0)

    async def _on_utterance_end(self) -> None:
        if self._previewing:
            self._set_status("stopped")
            self._previewing = False
            return

        if self.status == "paused":
            # Finished before the pause reached the provider: resume starts the next item
            self._record_history(self.state.current_item, completed=True)
            self._resumable_utterance = False
            self._paused_provider_time = 0.0
            self._ended_while_paused = not self.state.next()
            return

        if self.status not in ACTIVE_STATUSES:
            return

        self._record_history(self.state.current_item, completed=True)

        if self.state.next():
            await self._play_current()
        else:
            await self._finish_queue()

    async def _handle_provider_failure(self, provider: BaseSpeechProvider, error: Any) -> None:
        """Benign: ignore. Otherwise swap to the fallback and retry once, or halt."""
        if is_benign_interruption(error):
            logger.debug(f"[PlaybackOrchestrator] Ignoring benign interruption from {provider.provider_id}")
            return

        message = error_message(error)
        logger.error(f"[PlaybackOrchestrator] Provider {provider.provider_id} failed: {message}")

        if self._previewing:
            self._set_status("stopped")
            self._previewing = False
            self._report_error(message)
            return

        fallback_id = select_fallback_provider(provider.kind, error)
        if fallback_id is None or fallback_id == provider.provider_id:
            await self._halt(message)
            return

        self._report_error(message)
        logger.warning(f"[PlaybackOrchestrator] Falling back to '{fallback_id}' and retrying item {self.state.current_index}")
        self._invalidate_utterance()
        try:
            await self._activate_provider(fallback_id)
        except Exception as e:
            await self._halt(error_message(e))
            return
        await self._play_current()

    async def _halt(self, message: str) -> None:
        provider = self.provider_manager.active
        self._invalidate_utterance()
        if provider is not None:
            await self._call_provider(provider.stop(), "stop")
        self.tracker.clear()
        self.state.save_playback_state("stopped")
        self._set_status("stopped")
        self.platform.stop()
        self._report_error(message)

    async def _call_provider(self, call: Awaitable[Any], action: str) -> None:
        """Best-effort provider call used on stop/pause paths."""
        try:
            await call
        except Exception as e:
            if not is_benign_interruption(e):
                logger.warning(f"[PlaybackOrchestrator] Provider {action} failed: {e}")

    def _begin_utterance(self) -> None:
        """New utterance: events pumped before this point belong to an old one."""
        self._utterance_id += 1
        provider = self.provider_manager.active
        if provider is None:
            return
        while not provider.events.empty():
            event = provider.events.get_nowait()
            if event.type == "download-progress":
                self._notify(download_progress=DownloadProgress(
                    voice_id=event.voice_id or "",
                    percent=event.percent or 0.0,
                    status=event.message or ""
                ))

    def _invalidate_utterance(self) -> None:
        self._utterance_id += 1

    # ------------------------------------------------------------------
    # Status, history, notifications
    # ------------------------------------------------------------------

    def _set_status(self, status: str) -> bool:
        """
        Apply a status transition.

        Returns:
            False if the platform refused background playback (playback halted)
        """
        old_status = self.status
        if old_status in ACTIVE_STATUSES and status in ("paused", "stopped") and not self._previewing:
            self._record_history(self.state.current_item, completed=False)

        self.status = status
        if status in ("paused", "stopped"):
            self._lexicon_rules = None

        try:
            self.platform.update_playback_state(status)
        except PlatformCapabilityError as e:
            logger.error(f"[PlaybackOrchestrator] Platform refused playback: {e}")
            self.status = "stopped"
            self._lexicon_rules = None
            self._invalidate_utterance()
            self.tracker.clear()
            self.platform.stop()
            self._report_error(error_message(e))
            return False

        if old_status != status:
            logger.debug(f"[PlaybackOrchestrator] Status: {old_status} → {status}")
        self._notify()
        return True

    def _record_history(self, item: Optional[QueueItem], completed: bool) -> None:
        """Report a narrated location. Announcements and the preview provider are excluded."""
        if item is None or item.is_announcement or not item.location_id:
            return
        if not self.state.book_id or self.repository is None:
            return
        provider = self.provider_manager.active
        if provider is not None and provider.kind == "preview":
            return
        try:
            self.repository.update_reading_history(
                self.state.book_id,
                item.location_id,
                source="tts",
                label=item.text[:80],
                completed=completed
            )
        except Exception as e:
            logger.warning(f"[PlaybackOrchestrator] Failed to update reading history: {e}")

    def _report_error(self, message: str) -> None:
        self.last_error = message
        self._notify(error=message)

    def _notify(self, error: Optional[str] = None, download_progress: Optional[DownloadProgress] = None) -> None:
        item = self.state.current_item
        # model_construct keeps the queue tuple identity for listeners
        update = StatusUpdate.model_construct(
            status=self.status,
            active_location_id=item.location_id if item else None,
            current_index=self.state.current_index,
            queue=self.state.queue,
            error=error,
            download_progress=download_progress
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"[PlaybackOrchestrator] Status listener failed: {e}")

    def _on_state_change(self, snapshot: PlaybackStateSnapshot) -> None:
        if snapshot.current_item is not None:
            self._update_media_metadata(snapshot.current_item)
        self._notify()

    def _update_media_metadata(self, item: QueueItem) -> None:
        try:
            self.platform.update_metadata(MediaMetadata(
                title=item.title or "Chapter Text",
                artist=item.author,
                album=item.book_title,
                artwork_url=item.cover_url
            ))
        except Exception as e:
            logger.debug(f"[PlaybackOrchestrator] Media metadata update failed: {e}")

    def _update_position(self, provider_time: float) -> None:
        position = self.state.get_current_position(provider_time)
        duration = max(self.state.get_total_duration(), position)
        self.platform.set_position_state(duration, self.settings.speed, position)
        for listener in list(self._position_listeners):
            try:
                listener(position, duration, self.settings.speed)
            except Exception as e:
                logger.error(f"[PlaybackOrchestrator] Position listener failed: {e}")

    def _persist_settings(self, **changes) -> None:
        if self.settings_store is None:
            return
        try:
            self.settings_store.update_playback_settings(**changes)
        except Exception as e:
            logger.warning(f"[PlaybackOrchestrator] Failed to persist settings {list(changes)}: {e}")

    def _enqueue(self, task: Callable[[], Awaitable[Any]], label: str) -> "asyncio.Future[Any]":
        return self.sequencer.enqueue(task, label=label)

    def __repr__(self) -> str:
        provider = self.provider_manager.active
        return (
            f"<PlaybackOrchestrator status={self.status} book={self.book_id} "
            f"index={self.state.current_index}/{len(self.state.queue)} "
            f"provider={provider.provider_id if provider else None}>"
        )


_orchestrator: Optional[PlaybackOrchestrator] = None


def get_playback_orchestrator() -> PlaybackOrchestrator:
    """
    Get the application's orchestrator (created on first use).

    Only the FastAPI app uses this accessor; everything else receives the
    orchestrator it works with explicitly.
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = create_playback_orchestrator()
    return _orchestrator


def create_playback_orchestrator() -> PlaybackOrchestrator:
    """Compose an orchestrator on the application database."""
    from db.database import get_db_connection_simple
    from db.lexicon_repository import LexiconRepository
    from db.playback_repository import PlaybackRepository
    from services.settings_service import SettingsService

    conn = get_db_connection_simple()
    repository = PlaybackRepository(conn)
    settings_service = SettingsService(conn)
    all_settings = settings_service.get_all_settings()

    cloud_config = all_settings.get("providers", {}).get("cloud", {})
    provider_configs: Dict[str, Dict[str, Any]] = {}
    if cloud_config.get("baseUrl"):
        provider_configs["cloud"] = {
            "base_url": cloud_config["baseUrl"],
            "language": cloud_config.get("language", "en")
        }

    return PlaybackOrchestrator(
        state=PlaybackStateManager(store=repository),
        provider_manager=ProviderManager(provider_configs=provider_configs),
        content_pipeline=StaticContentPipeline(),
        repository=repository,
        lexicon=LexiconRepository(conn),
        settings=settings_service.get_playback_settings(),
        settings_store=settings_service
    )


async def shutdown_playback_orchestrator() -> None:
    """Close the application's orchestrator if one was created."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.close()
        _orchestrator = None
