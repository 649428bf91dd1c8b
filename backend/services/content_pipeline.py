"""
Content Pipeline - turns book sections into narratable queues

The playback engine does not segment text itself. A content pipeline hands it
already-segmented sentences per section; BaseContentPipeline turns them into
QueueItems, adding synthetic announcement items:

- pre-roll: "<title>. Estimated reading time: N minutes." (optional)
- empty section: one of NO_TEXT_MESSAGES

Skip masks (raw segment indices to exclude, e.g. detected tables or
footnotes) and table adaptations (spoken renditions of tables) may be found
after the queue was built; they are reported through the on_mask_found and
on_adaptations_found callbacks.
"""
import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple
from loguru import logger

from core.provider_exceptions import ContentLoadError
from models.playback_models import QueueItem, SectionInfo, TableAdaptation


WORDS_PER_MINUTE = 180
CHARS_PER_WORD = 5

NO_TEXT_MESSAGES = [
    "This chapter appears to be empty.",
    "There is no text to read here.",
    "This page contains only images or formatting.",
    "Silence fills this chapter.",
    "Moving on, as this section has no content.",
    "No words found on this page.",
    "This section is blank.",
    "Skipping this empty section.",
    "Nothing to read here.",
    "This part of the book is silent.",
]

CONTENT_LOAD_FAILED_MESSAGE = "This section could not be loaded."

MaskCallback = Callable[[Set[int]], None]
AdaptationCallback = Callable[[List[TableAdaptation]], None]


@dataclass
class SentenceSegment:
    """One raw sentence from the segmenter."""
    text: str
    location_id: Optional[str]
    source_indices: Tuple[int, ...] = ()


@dataclass
class SectionContent:
    """Segmented text and display metadata of one section."""
    title: Optional[str] = None
    sentences: List[SentenceSegment] = field(default_factory=list)
    book_title: Optional[str] = None
    author: Optional[str] = None
    cover_url: Optional[str] = None


def generate_preroll(title: str, word_count: int, speed: float = 1.0) -> str:
    """
    Spoken section introduction with an estimated reading time.

    Examples:
        generate_preroll("Chapter 1", 360) -> "Chapter 1. Estimated reading time: 2 minutes."
    """
    adjusted_wpm = WORDS_PER_MINUTE * (speed if speed > 0 else 1.0)
    minutes = max(1, round(word_count / adjusted_wpm))
    plural = "" if minutes == 1 else "s"
    return f"{title}. Estimated reading time: {minutes} minute{plural}."


def make_announcement(text: str, title: Optional[str] = None, content: Optional[SectionContent] = None) -> QueueItem:
    """Synthetic item without a reader location (excluded from reading history)."""
    return QueueItem(
        text=text,
        location_id=None,
        is_announcement=True,
        title=title,
        book_title=content.book_title if content else None,
        author=content.author if content else None,
        cover_url=content.cover_url if content else None
    )


class BaseContentPipeline(ABC):
    """
    Source of sections and their segmented text.

    Subclasses implement get_sections() and load_section_content();
    load_narratable_queue() builds the queue.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()
        self._detection_tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def get_sections(self, book_id: str) -> List[SectionInfo]:
        """Playlist of the book, in reading order."""
        pass

    @abstractmethod
    async def load_section_content(self, book_id: str, section: SectionInfo) -> Optional[SectionContent]:
        """
        Segmented content of one section.

        Raises:
            ContentLoadError: Content could not be read
        """
        pass

    async def detect_skip_mask(self, book_id: str, section: SectionInfo) -> Optional[Set[int]]:
        """Raw indices to skip, if any are known for this section."""
        return None

    async def detect_table_adaptations(self, book_id: str, section: SectionInfo) -> List[TableAdaptation]:
        """Spoken replacements for the tables of this section, if any."""
        return []

    async def load_narratable_queue(
        self,
        book_id: str,
        section: SectionInfo,
        section_index: int,
        preroll_enabled: bool = False,
        speed: float = 1.0,
        on_mask_found: Optional[MaskCallback] = None,
        on_adaptations_found: Optional[AdaptationCallback] = None
    ) -> List[QueueItem]:
        """
        Build the queue for one section.

        Args:
            book_id: Book the section belongs to
            section: Section to load
            section_index: Position of the section in the playlist
            preroll_enabled: Prepend a reading-time announcement
            speed: Playback speed (scales the announced reading time)
            on_mask_found: Called with a skip mask once one is detected
            on_adaptations_found: Called with the table adaptations once found

        Returns:
            Queue items; a single announcement for sections without text

        Raises:
            ContentLoadError: Section could not be loaded
        """
        try:
            content = await self.load_section_content(book_id, section)
        except ContentLoadError:
            raise
        except Exception as e:
            raise ContentLoadError(f"Failed to load section {section.section_id}: {e}") from e

        content = content or SectionContent()
        title = content.title or section.title or f"Section {section_index + 1}"

        sentences = [s for s in content.sentences if s.location_id and s.text.strip()]
        if not sentences:
            logger.debug(f"[ContentPipeline] Section {section.section_id} has no narratable text")
            return [make_announcement(self.rng.choice(NO_TEXT_MESSAGES), title, content)]

        queue: List[QueueItem] = []

        if preroll_enabled:
            character_count = section.character_count or sum(len(s.text) for s in sentences)
            word_count = round(character_count / CHARS_PER_WORD)
            queue.append(make_announcement(generate_preroll(title, word_count, speed), title, content))

        for sentence in sentences:
            queue.append(QueueItem(
                text=sentence.text,
                location_id=sentence.location_id,
                source_indices=tuple(sentence.source_indices),
                title=title,
                book_title=content.book_title,
                author=content.author,
                cover_url=content.cover_url
            ))

        if on_mask_found is not None:
            self._schedule(self._detect_and_report(book_id, section, on_mask_found))
        if on_adaptations_found is not None:
            self._schedule(self._adapt_and_report(book_id, section, on_adaptations_found))

        return queue

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._detection_tasks.add(task)
        task.add_done_callback(self._detection_tasks.discard)

    async def _detect_and_report(self, book_id: str, section: SectionInfo, on_mask_found: MaskCallback) -> None:
        try:
            mask = await self.detect_skip_mask(book_id, section)
        except Exception as e:
            logger.warning(f"[ContentPipeline] Skip detection failed for {section.section_id}: {e}")
            return
        if mask:
            on_mask_found(set(mask))

    async def _adapt_and_report(
        self, book_id: str, section: SectionInfo, on_adaptations_found: AdaptationCallback
    ) -> None:
        try:
            adaptations = await self.detect_table_adaptations(book_id, section)
        except Exception as e:
            logger.warning(f"[ContentPipeline] Table adaptation failed for {section.section_id}: {e}")
            return
        if adaptations:
            logger.debug(f"[ContentPipeline] {len(adaptations)} table adaptation(s) for {section.section_id}")
            on_adaptations_found(list(adaptations))

    async def close(self) -> None:
        """Cancel pending skip-mask and table detection."""
        for task in list(self._detection_tasks):
            task.cancel()
        if self._detection_tasks:
            await asyncio.gather(*self._detection_tasks, return_exceptions=True)
        self._detection_tasks.clear()


class StaticContentPipeline(BaseContentPipeline):
    """
    In-memory pipeline: books are registered with their sections up front.

    Used by the HTTP API (clients upload segmented sections) and by tests.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        super().__init__(rng=rng)
        self._books: Dict[str, List[Tuple[SectionInfo, SectionContent]]] = {}
        self._masks: Dict[Tuple[str, str], Set[int]] = {}
        self._adaptations: Dict[Tuple[str, str], List[TableAdaptation]] = {}

    def add_book(self, book_id: str, sections: List[Tuple[SectionInfo, SectionContent]]) -> None:
        self._books[book_id] = list(sections)
        logger.debug(f"[ContentPipeline] Registered book {book_id} ({len(sections)} sections)")

    def has_book(self, book_id: str) -> bool:
        return book_id in self._books

    def set_skip_mask(self, book_id: str, section_id: str, mask: Set[int]) -> None:
        self._masks[(book_id, section_id)] = set(mask)

    def set_table_adaptations(self, book_id: str, section_id: str, adaptations: List[TableAdaptation]) -> None:
        self._adaptations[(book_id, section_id)] = list(adaptations)

    async def get_sections(self, book_id: str) -> List[SectionInfo]:
        return [info for info, _ in self._books.get(book_id, [])]

    async def load_section_content(self, book_id: str, section: SectionInfo) -> Optional[SectionContent]:
        for info, content in self._books.get(book_id, []):
            if info.section_id == section.section_id:
                return content
        raise ContentLoadError(f"Unknown section {section.section_id} in book {book_id}")

    async def detect_skip_mask(self, book_id: str, section: SectionInfo) -> Optional[Set[int]]:
        return self._masks.get((book_id, section.section_id))

    async def detect_table_adaptations(self, book_id: str, section: SectionInfo) -> List[TableAdaptation]:
        return self._adaptations.get((book_id, section.section_id), [])
