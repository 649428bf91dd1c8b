"""
Pydantic models for the narration playback engine.

Domain types shared by the state manager, providers, orchestrator,
persistence layer and API:

- QueueItem: one narratable unit (usually one sentence)
- TableAdaptation: spoken replacement for the cells of one table
- ProviderEvent: tagged event emitted on a provider's event channel
- AlignmentEntry: one time -> text offset sample
- PersistedSnapshot: what is stored to resume a book later
- StatusUpdate: what subscribers receive on every transition
"""
from typing import Optional, Literal, Tuple, List, Any
from pydantic import BaseModel, ConfigDict, Field

from models.response_models import to_camel


PlaybackStatus = Literal["stopped", "loading", "playing", "paused", "completed"]

ProviderKind = Literal["local", "cloud", "preview"]

ProviderEventType = Literal[
    "start",
    "end",
    "error",
    "boundary",
    "timeupdate",
    "meta",
    "download-progress",
]

AlignmentGranularity = Literal["word", "sentence"]


class QueueItem(BaseModel):
    """
    One narratable unit of text plus its document location.

    Items are immutable; masking and table adaptation produce copies via
    model_copy() so that a queue reference handed to subscribers never
    changes underneath them.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True
    )

    text: str
    location_id: Optional[str] = None
    is_announcement: bool = False
    is_skipped: bool = False
    source_indices: Tuple[int, ...] = ()

    # Display metadata for media session / mini player
    title: Optional[str] = None
    book_title: Optional[str] = None
    author: Optional[str] = None
    cover_url: Optional[str] = None


class TableAdaptation(BaseModel):
    """
    Natural-language rendition of a table that replaces its cells in the queue.

    Cells are matched either by document location (every item located under
    root_location_id) or, when no root is given, by source indices (items
    whose source indices all fall within source_indices).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    text: str = Field(..., min_length=1)
    root_location_id: Optional[str] = None
    source_indices: Tuple[int, ...] = ()


class Voice(BaseModel):
    """Voice offered by a speech provider."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    language: str = "en"
    provider_id: str
    is_downloaded: bool = True


class AlignmentEntry(BaseModel):
    """Provider timing sample: at `time` seconds, narration reached `text_offset`."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    time: float = Field(..., ge=0.0)
    text_offset: int = Field(..., ge=0)
    granularity: AlignmentGranularity = "word"


class ProviderEvent(BaseModel):
    """
    Tagged event emitted by a speech provider.

    Only the fields relevant to `type` are populated:
    - boundary: char_index
    - timeupdate: time, duration
    - meta: alignment
    - error: error
    - download-progress: voice_id, percent, message
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: ProviderEventType
    char_index: Optional[int] = None
    time: Optional[float] = None
    duration: Optional[float] = None
    alignment: Optional[List[AlignmentEntry]] = None
    error: Optional[Any] = None
    voice_id: Optional[str] = None
    percent: Optional[float] = None
    message: Optional[str] = None


class DownloadProgress(BaseModel):
    """Voice asset download progress forwarded to subscribers."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    voice_id: str
    percent: float
    status: str = ""


class PersistedSnapshot(BaseModel):
    """Stored playback session for one book."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    book_id: str
    queue: List[QueueItem] = []
    current_index: int = 0
    current_section_index: int = -1
    last_played_location_id: Optional[str] = None
    last_pause_time: Optional[float] = None


class SectionInfo(BaseModel):
    """Playlist entry for one chapter/section of a book."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    section_id: str
    title: Optional[str] = None
    character_count: int = 0


class StatusUpdate(BaseModel):
    """
    Notification delivered to subscribers on every transition.

    `queue` is the same tuple object the state manager holds, so listeners
    can detect queue replacement by identity.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: PlaybackStatus
    active_location_id: Optional[str] = None
    current_index: int = 0
    queue: Tuple[QueueItem, ...] = ()
    error: Optional[str] = None
    download_progress: Optional[DownloadProgress] = None


class PlaybackSettings(BaseModel):
    """User playback preferences (persisted under the 'playback' settings key)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider_id: str = "local"
    voice_id: Optional[str] = None
    speed: float = 1.0
    preroll_enabled: bool = False
    smart_resume_enabled: bool = True
    background_audio_mode: Literal["silence", "white-noise"] = "silence"
