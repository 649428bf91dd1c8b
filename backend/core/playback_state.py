"""
Playback State Manager

Owns the narration queue of one section, the current position within it,
the skip mask and the virtual timeline derived from both.

Virtual timeline:
    prefix_sums[i] = sum of virtual lengths of items [0, i)
    virtual length = 0 for skipped items, len(text) otherwise

The prefix sums are rebuilt whenever the queue or the mask changes, so every
duration/seek query is O(log n) via bisect instead of a queue rescan.

Persistence cadence:
    Every position change is persisted. The heavy queue content is only
    rewritten when the queue object itself changed since the last write
    (identity comparison); otherwise only the position fields are written.
    Persistence is best-effort: failures are logged and never block playback.
"""
import time
from bisect import bisect_right
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set, Tuple
from loguru import logger

from config import PLAYBACK_CHARS_PER_MINUTE
from models.playback_models import QueueItem, PersistedSnapshot, TableAdaptation


@dataclass(frozen=True)
class PlaybackStateSnapshot:
    """State handed to listeners after every change."""
    queue: Tuple[QueueItem, ...]
    current_index: int
    current_item: Optional[QueueItem]
    current_section_index: int


StateChangeListener = Callable[[PlaybackStateSnapshot], None]


class PlaybackStateManager:
    """
    Queue, position, skip mask and virtual timeline for one book.

    Out-of-range indices are clamped, never raised. An empty queue makes every
    duration query return 0.

    Attributes:
        speed: Playback speed multiplier used to scale the timeline
        chars_per_minute: Narration rate at 1.0x
        prefix_sums: Virtual timeline (len(queue) + 1 entries)
        last_pause_time: Epoch seconds of the last pause, None if not paused
    """

    def __init__(
        self,
        store=None,
        chars_per_minute: float = PLAYBACK_CHARS_PER_MINUTE,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            store: Persistence collaborator (PlaybackRepository or compatible);
                   None disables persistence
            chars_per_minute: Narration rate at 1.0x speed
            clock: Epoch-seconds clock used to stamp pauses
        """
        self.store = store
        self.clock = clock
        self.chars_per_minute = chars_per_minute
        self.speed = 1.0
        self.prefix_sums: List[int] = [0]
        self.last_pause_time: Optional[float] = None

        self._queue: Tuple[QueueItem, ...] = ()
        self._current_index = 0
        self._current_section_index = -1
        self._skip_mask: frozenset = frozenset()
        # Queue positions skipped because an adapted table replaces them
        self._adapted_skips: frozenset = frozenset()

        self._book_id: Optional[str] = None
        self._last_persisted_queue: Optional[Tuple[QueueItem, ...]] = None
        self._listeners: List[StateChangeListener] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def queue(self) -> Tuple[QueueItem, ...]:
        return self._queue

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current_section_index(self) -> int:
        return self._current_section_index

    @property
    def skip_mask(self) -> frozenset:
        return self._skip_mask

    @property
    def book_id(self) -> Optional[str]:
        return self._book_id

    @property
    def current_item(self) -> Optional[QueueItem]:
        if 0 <= self._current_index < len(self._queue):
            return self._queue[self._current_index]
        return None

    # ------------------------------------------------------------------
    # Book / queue lifecycle
    # ------------------------------------------------------------------

    def set_book_id(self, book_id: Optional[str]) -> None:
        """Switch the active book. Clears state when the book changes."""
        if self._book_id == book_id:
            return
        self._book_id = book_id
        self._last_persisted_queue = None
        self.last_pause_time = None
        self.reset()

    def reset(self) -> None:
        """Drop queue, position and mask."""
        self._queue = ()
        self._current_index = 0
        self._current_section_index = -1
        self._skip_mask = frozenset()
        self.prefix_sums = [0]
        self._last_persisted_queue = None
        self._notify()

    def set_queue(self, items: Iterable[QueueItem], start_index: int = 0, section_index: int = -1) -> None:
        """
        Replace the queue.

        Resets the skip mask, rebuilds the timeline and clamps start_index
        into range.
        """
        queue = tuple(
            item.model_copy(update={"is_skipped": False}) if item.is_skipped else item
            for item in items
        )
        self._queue = queue
        self._skip_mask = frozenset()
        self._adapted_skips = frozenset()
        self._current_index = self._clamp(start_index)
        self._current_section_index = section_index
        self._last_persisted_queue = None
        self._rebuild_timeline()
        self.persist_queue()
        self._notify()

    def restore(self, snapshot: PersistedSnapshot) -> None:
        """
        Restore a persisted session, keeping the skip flags it was saved with.

        The mask is reconstructed from the source indices of skipped items.
        """
        self._queue = tuple(snapshot.queue)
        mask = set()
        for item in self._queue:
            if item.is_skipped:
                mask.update(item.source_indices)
        self._skip_mask = frozenset(mask)
        self._adapted_skips = frozenset()
        self._current_index = self._clamp(snapshot.current_index)
        self._current_section_index = snapshot.current_section_index
        self.last_pause_time = snapshot.last_pause_time
        self._rebuild_timeline()
        # The stored queue is what we just loaded
        self._last_persisted_queue = self._queue
        self._notify()

    def apply_skipped_mask(self, raw_skipped_indices: Iterable[int]) -> bool:
        """
        Mark items whose source indices are ALL in the mask as skipped.

        A merged item that is only partially covered stays audible: dropping
        part of an utterance would break alignment.

        Returns:
            True if any item changed
        """
        mask = frozenset(raw_skipped_indices)
        self._skip_mask = mask

        changed = False
        new_items = []
        for i, item in enumerate(self._queue):
            should_skip = i in self._adapted_skips or (bool(item.source_indices) and all(
                idx in mask for idx in item.source_indices
            ))
            if item.is_skipped != should_skip:
                item = item.model_copy(update={"is_skipped": should_skip})
                changed = True
            new_items.append(item)

        if changed:
            self._queue = tuple(new_items)
            self._rebuild_timeline()
            self.persist_queue()
            self._notify()
        return changed

    def apply_table_adaptations(self, adaptations: Iterable[TableAdaptation]) -> bool:
        """
        Swap-and-skip: the first item matching an adaptation (its anchor) gets
        the adapted text and is made audible; the other matched cells are
        skipped so the table is read once.

        Adaptations are applied in order. An item claimed by an earlier
        adaptation is not considered again.

        Returns:
            True if any item changed
        """
        items = list(self._queue)
        claimed: Set[int] = set()
        adapted_skips: Set[int] = set(self._adapted_skips)
        changed = False

        for adaptation in adaptations:
            anchor_found = False
            for i, item in enumerate(items):
                if i in claimed or not _matches_adaptation(item, adaptation):
                    continue
                claimed.add(i)
                if not anchor_found:
                    anchor_found = True
                    adapted_skips.discard(i)
                    if item.text != adaptation.text or item.is_skipped:
                        items[i] = item.model_copy(update={"text": adaptation.text, "is_skipped": False})
                        changed = True
                else:
                    adapted_skips.add(i)
                    if item.is_skipped:
                        continue
                    items[i] = item.model_copy(update={"is_skipped": True})
                    changed = True

        self._adapted_skips = frozenset(adapted_skips)
        if changed:
            self._queue = tuple(items)
            self._rebuild_timeline()
            self.persist_queue()
            self._notify()
        return changed

    def is_identical_to(self, items: Iterable[QueueItem]) -> bool:
        """Same texts and locations, in the same order."""
        items = list(items)
        if len(items) != len(self._queue):
            return False
        return all(
            a.text == b.text and a.location_id == b.location_id
            for a, b in zip(self._queue, items)
        )

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def has_next(self) -> bool:
        return self._next_visible_index(self._current_index) != -1

    def has_prev(self) -> bool:
        return self._prev_visible_index(self._current_index) != -1

    def next(self) -> bool:
        """
        Advance to the next non-skipped item.

        Returns:
            False at end of queue (position unchanged)
        """
        index = self._next_visible_index(self._current_index)
        if index == -1:
            return False
        self._move_to(index)
        return True

    def prev(self) -> bool:
        """
        Retreat to the previous non-skipped item.

        Returns:
            False if already at the first reachable item (no-op)
        """
        index = self._prev_visible_index(self._current_index)
        if index == -1:
            return False
        self._move_to(index)
        return True

    def next_visible_item(self) -> Optional[QueueItem]:
        """Item that next() would land on, without moving."""
        index = self._next_visible_index(self._current_index)
        return self._queue[index] if index != -1 else None

    def jump_to(self, index: int) -> bool:
        """
        Set the position directly (mask is not consulted).

        Returns:
            True if the queue is non-empty (index is clamped into range)
        """
        if not self._queue:
            return False
        self._move_to(self._clamp(index))
        return True

    def jump_to_end(self) -> None:
        """Move to the last item."""
        if self._queue:
            self._move_to(len(self._queue) - 1)

    def seek_to_time(self, seconds: float) -> bool:
        """
        Move to the item covering `seconds` on the virtual timeline.

        Returns:
            True if the index changed; False is meaningful (already there)
        """
        index = self.index_at_time(seconds)
        if index is None or index == self._current_index:
            return False
        self._move_to(index)
        return True

    def index_at_time(self, seconds: float) -> Optional[int]:
        """
        Index of the item covering `seconds` on the virtual timeline.

        Seeking to the start offset of a skipped item lands on the first
        non-skipped item after it; seeking past the end lands on the last
        non-skipped item.

        Returns:
            Index, or None if nothing on the timeline is audible
        """
        total = self.prefix_sums[-1]
        cps = self.chars_per_second()
        if not self._queue or total <= 0 or cps <= 0:
            return None

        target = max(0.0, seconds) * cps
        if target >= total:
            return self._prev_visible_index(len(self._queue))

        # prefix_sums[i] <= target < prefix_sums[i + 1]  =>  item i has length > 0
        return bisect_right(self.prefix_sums, target) - 1

    # ------------------------------------------------------------------
    # Timeline queries
    # ------------------------------------------------------------------

    def set_speed(self, speed: float) -> None:
        self.speed = speed

    def chars_per_second(self) -> float:
        """Narration rate at the current speed."""
        return (self.chars_per_minute / 60.0) * self.speed

    def virtual_offset(self, index: int) -> int:
        """Virtual characters before item `index`."""
        index = max(0, min(index, len(self._queue)))
        return self.prefix_sums[index]

    def time_at_index(self, index: int) -> float:
        """Start time (seconds) of item `index` on the virtual timeline."""
        cps = self.chars_per_second()
        if cps <= 0:
            return 0.0
        return self.virtual_offset(index) / cps

    def get_total_duration(self) -> float:
        """Estimated duration of the section in seconds (skipped items count 0)."""
        if not self._queue:
            return 0.0
        cps = self.chars_per_second()
        if cps <= 0:
            return 0.0
        return self.prefix_sums[-1] / cps

    def get_remaining_duration(self, provider_time: float = 0.0) -> float:
        """Estimated time left in the section from the current position."""
        if not self._queue:
            return 0.0
        return max(0.0, self.get_total_duration() - self.get_current_position(provider_time))

    def get_current_position(self, provider_time: float = 0.0) -> float:
        """
        Elapsed section time in seconds.

        Args:
            provider_time: Seconds into the current utterance as reported by the provider
        """
        if not self._queue:
            return 0.0
        return self.time_at_index(self._current_index) + provider_time

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist_queue(self) -> None:
        """
        Persist queue and position for the active book.

        Writes only the position when the queue object is the one written last.
        """
        if not self._book_id or self.store is None:
            return
        try:
            if self._last_persisted_queue is self._queue:
                self.store.save_position_only(
                    self._book_id,
                    self._current_index,
                    self._current_section_index
                )
            else:
                self.store.save_queue_snapshot(
                    self._book_id,
                    list(self._queue),
                    self._current_index,
                    self._current_section_index
                )
                self._last_persisted_queue = self._queue
        except Exception as e:
            logger.warning(f"[PlaybackState] Failed to persist queue for book {self._book_id}: {e}")

    def save_playback_state(self, status: str) -> None:
        """
        Persist last played location and pause timestamp.

        The pause timestamp is set when status is 'paused' and cleared otherwise.
        """
        self.last_pause_time = self.clock() if status == "paused" else None
        if not self._book_id or self.store is None:
            return
        item = self.current_item
        location_id = item.location_id if item else None
        try:
            self.store.update_playback_state(self._book_id, location_id, self.last_pause_time)
        except Exception as e:
            logger.warning(f"[PlaybackState] Failed to save playback state: {e}")

    def clear_pause_time(self) -> None:
        self.last_pause_time = None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateChangeListener) -> Callable[[], None]:
        """
        Register a state-change listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> PlaybackStateSnapshot:
        return PlaybackStateSnapshot(
            queue=self._queue,
            current_index=self._current_index,
            current_item=self.current_item,
            current_section_index=self._current_section_index
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _clamp(self, index: int) -> int:
        if not self._queue:
            return 0
        return max(0, min(index, len(self._queue) - 1))

    def _move_to(self, index: int) -> None:
        self._current_index = index
        self.persist_queue()
        self._notify()

    def _next_visible_index(self, start: int) -> int:
        for i in range(start + 1, len(self._queue)):
            if not self._queue[i].is_skipped:
                return i
        return -1

    def _prev_visible_index(self, start: int) -> int:
        for i in range(min(start, len(self._queue)) - 1, -1, -1):
            if not self._queue[i].is_skipped:
                return i
        return -1

    def _rebuild_timeline(self) -> None:
        sums = [0] * (len(self._queue) + 1)
        for i, item in enumerate(self._queue):
            sums[i + 1] = sums[i] + (0 if item.is_skipped else len(item.text))
        self.prefix_sums = sums

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"[PlaybackState] Listener failed: {e}")


# Characters that may follow a location prefix at a path-step boundary
LOCATION_STEP_SEPARATORS = ("/", "!", "[", ":")


def _strip_location_wrapper(location: str) -> str:
    if location.startswith("epubcfi(") and location.endswith(")"):
        return location[len("epubcfi("):-1]
    return location


def is_location_within(location_id: Optional[str], root_location_id: str) -> bool:
    """
    True if location_id is root_location_id or a step below it.

    '/6/2' contains '/6/2/4' and '/6/2[t1]' but not '/6/20'.
    """
    if not location_id:
        return False
    location = _strip_location_wrapper(location_id)
    root = _strip_location_wrapper(root_location_id)
    if not location.startswith(root):
        return False
    return len(location) == len(root) or location[len(root)] in LOCATION_STEP_SEPARATORS


def _matches_adaptation(item: QueueItem, adaptation: TableAdaptation) -> bool:
    if item.is_announcement:
        return False
    if adaptation.root_location_id:
        return is_location_within(item.location_id, adaptation.root_location_id)
    return bool(item.source_indices) and set(item.source_indices) <= set(adaptation.source_indices)
