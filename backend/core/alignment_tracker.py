"""
Alignment Tracker - keeps the visual reader in sync with narration

Receives the active location of the item being narrated plus provider
timing samples (boundary / timeupdate / meta) and drives a ReaderRendition:

- one active location at a time; the previous highlight is removed first
- display/highlight only while the reader is in the foreground
- while backgrounded, only the latest location is remembered and applied
  once when the reader becomes visible again
- cleared on stop

Word-level position (active_char_offset) is derived from boundary events or,
for providers that send a dense alignment table, from timeupdate samples
looked up in that table.
"""
from abc import ABC, abstractmethod
from bisect import bisect_right
from typing import List, Optional
from loguru import logger

from models.playback_models import AlignmentEntry


class ReaderRendition(ABC):
    """Visual reader surface (implemented by the UI layer)."""

    @abstractmethod
    def display_location(self, location_id: str) -> None:
        """Scroll/paginate so that location_id is visible."""
        pass

    @abstractmethod
    def add_highlight(self, location_id: str) -> None:
        pass

    @abstractmethod
    def remove_highlight(self, location_id: str) -> None:
        pass


class AlignmentTracker:
    """
    Tracks the narrated location and mirrors it onto a reader rendition.

    Attributes:
        active_location_id: Location being narrated (None when stopped)
        highlighted_location_id: Location currently highlighted in the reader
        active_char_offset: Offset of the current word within the item text
        is_visible: Whether the reader is in the foreground
    """

    def __init__(self, rendition: Optional[ReaderRendition] = None):
        self.rendition = rendition
        self.active_location_id: Optional[str] = None
        self.highlighted_location_id: Optional[str] = None
        self.active_char_offset: Optional[int] = None
        self.is_visible = True
        self._alignment: List[AlignmentEntry] = []
        self._alignment_times: List[float] = []

    def attach(self, rendition: Optional[ReaderRendition]) -> None:
        """Attach (or detach with None) the reader. Re-syncs on attach."""
        self.rendition = rendition
        self.highlighted_location_id = None
        if rendition is not None and self.is_visible:
            self._sync()

    # ------------------------------------------------------------------
    # Narration input
    # ------------------------------------------------------------------

    def set_active_location(self, location_id: Optional[str]) -> None:
        """
        New item started (or None for no active item).

        Word-level state from the previous item is dropped.
        """
        if location_id == self.active_location_id:
            return
        self.active_location_id = location_id
        self.active_char_offset = None
        self._alignment = []
        self._alignment_times = []

        if self.is_visible:
            self._sync()

    def on_boundary(self, char_index: Optional[int]) -> None:
        """Provider reached a word/sentence boundary."""
        if char_index is None or char_index < 0:
            return
        self.active_char_offset = char_index

    def on_meta(self, alignment: Optional[List[AlignmentEntry]]) -> None:
        """Provider delivered an alignment table for the current item."""
        entries = sorted(alignment or [], key=lambda e: e.time)
        self._alignment = entries
        self._alignment_times = [e.time for e in entries]

    def on_timeupdate(self, time: Optional[float]) -> None:
        """Continuous time sample; resolved against the alignment table if any."""
        if time is None or not self._alignment:
            return
        pos = bisect_right(self._alignment_times, time) - 1
        if pos >= 0:
            self.active_char_offset = self._alignment[pos].text_offset

    def clear(self) -> None:
        """Playback stopped: drop the active location and its highlight."""
        self.active_location_id = None
        self.active_char_offset = None
        self._alignment = []
        self._alignment_times = []
        self._remove_current_highlight()

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def set_visible(self, visible: bool) -> None:
        """
        Reader moved to the foreground/background.

        Returning to the foreground applies the latest pending location once.
        """
        was_visible = self.is_visible
        self.is_visible = visible
        if visible and not was_visible:
            logger.debug(f"[AlignmentTracker] Foreground, catching up to {self.active_location_id}")
            self._sync()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sync(self) -> None:
        """Make the reader show exactly the active location."""
        if self.highlighted_location_id == self.active_location_id:
            return

        self._remove_current_highlight()

        location_id = self.active_location_id
        if location_id is None or self.rendition is None:
            return

        try:
            self.rendition.display_location(location_id)
            self.rendition.add_highlight(location_id)
            self.highlighted_location_id = location_id
        except Exception as e:
            logger.warning(f"[AlignmentTracker] Reader failed to show {location_id}: {e}")

    def _remove_current_highlight(self) -> None:
        previous = self.highlighted_location_id
        self.highlighted_location_id = None
        if previous is None or self.rendition is None:
            return
        try:
            self.rendition.remove_highlight(previous)
        except Exception as e:
            logger.warning(f"[AlignmentTracker] Reader failed to remove highlight {previous}: {e}")
