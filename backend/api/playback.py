"""
Playback API Endpoints

Commands are appended to the orchestrator's task chain; each endpoint waits
until its command has settled and answers 202 with the resulting status.
Failures inside the chain are not HTTP errors: they reach clients as
playback.status / playback.error SSE events (see api/events.py).
Only requests that cannot be turned into a command are rejected here.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Set
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from loguru import logger

from config import PLAYBACK_MIN_SPEED, PLAYBACK_MAX_SPEED
from core.exceptions import PlaybackCommandError
from core.playback_orchestrator import PlaybackOrchestrator, get_playback_orchestrator
from models.playback_models import SectionInfo, TableAdaptation
from models.response_models import (
    CommandAcceptedResponse,
    PlaybackStateResponse,
    QueueItemResponse,
    ReadingHistoryEntryResponse,
    ReadingHistoryResponse,
    VoiceResponse,
    VoicesListResponse,
    to_camel
)
from services.content_pipeline import SectionContent, SentenceSegment, StaticContentPipeline
from services.event_broadcaster import broadcaster, emit_position_update, emit_status_update

router = APIRouter(prefix="/api/playback", tags=["playback"])


# ============================================================================
# Request Models
# ============================================================================

class CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SeekRequest(CamelRequest):
    offset: int


class SeekToTimeRequest(CamelRequest):
    seconds: float = Field(..., ge=0.0)


class JumpRequest(CamelRequest):
    index: int = Field(..., ge=0)


class SpeedRequest(CamelRequest):
    speed: float


class VoiceRequest(CamelRequest):
    voice_id: Optional[str] = None


class ProviderRequest(CamelRequest):
    provider_id: str
    config: Dict[str, Any] = {}


class SentenceRequest(CamelRequest):
    text: str
    location_id: Optional[str] = None
    source_indices: List[int] = []


class SectionRequest(CamelRequest):
    section_id: str
    title: Optional[str] = None
    character_count: int = 0
    book_title: Optional[str] = None
    author: Optional[str] = None
    cover_url: Optional[str] = None
    sentences: List[SentenceRequest] = []


class BookRequest(CamelRequest):
    book_id: str = Field(..., min_length=1)
    sections: Optional[List[SectionRequest]] = None


class LoadSectionRequest(CamelRequest):
    section_index: Optional[int] = Field(None, ge=0)
    section_id: Optional[str] = None
    auto_play: bool = True


class SkipMaskRequest(CamelRequest):
    indices: List[int] = []


class TableAdaptationsRequest(CamelRequest):
    adaptations: List[TableAdaptation] = Field(..., min_length=1)


class PreviewRequest(CamelRequest):
    text: str = Field(..., min_length=1, max_length=2000)


class PlaybackPreferencesRequest(CamelRequest):
    preroll_enabled: Optional[bool] = None
    smart_resume_enabled: Optional[bool] = None


# ============================================================================
# Dependencies & helpers
# ============================================================================

def get_orchestrator() -> PlaybackOrchestrator:
    """Orchestrator used by the endpoints (overridable in tests)."""
    return get_playback_orchestrator()


async def _settle(command: str, future: "asyncio.Future[Any]", orchestrator: PlaybackOrchestrator) -> CommandAcceptedResponse:
    await future
    return CommandAcceptedResponse(command=command, status=orchestrator.status)


def _require_book(orchestrator: PlaybackOrchestrator) -> str:
    if not orchestrator.book_id:
        raise PlaybackCommandError("PLAYBACK_BOOK_NOT_LOADED")
    return orchestrator.book_id


_pending_emits: Set[asyncio.Task] = set()


def _schedule_emit(coro) -> None:
    task = asyncio.get_running_loop().create_task(coro)
    _pending_emits.add(task)
    task.add_done_callback(_pending_emits.discard)


def attach_sse_forwarding(orchestrator: PlaybackOrchestrator) -> List[Callable[[], None]]:
    """
    Forward orchestrator notifications to SSE clients.

    Returns:
        Unsubscribe callables
    """
    def on_status(update) -> None:
        _schedule_emit(emit_status_update(update, orchestrator.book_id))

    def on_position(position: float, duration: float, speed: float) -> None:
        _schedule_emit(emit_position_update(orchestrator.book_id, position, duration, speed))

    return [
        orchestrator.subscribe(on_status),
        orchestrator.subscribe_position(on_position),
    ]


# ============================================================================
# State
# ============================================================================

@router.get("/state", response_model=PlaybackStateResponse)
async def get_state(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Current status, position, timeline estimates and queue."""
    state = orchestrator.get_state()
    state["queue"] = [
        QueueItemResponse.model_validate(item.model_dump())
        for item in state["queue"]
    ]
    return PlaybackStateResponse(**state)


# ============================================================================
# Transport commands
# ============================================================================

@router.post("/play", response_model=CommandAcceptedResponse, status_code=202)
async def play(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("play", orchestrator.play(), orchestrator)


@router.post("/pause", response_model=CommandAcceptedResponse, status_code=202)
async def pause(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("pause", orchestrator.pause(), orchestrator)


@router.post("/resume", response_model=CommandAcceptedResponse, status_code=202)
async def resume(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("resume", orchestrator.resume(), orchestrator)


@router.post("/stop", response_model=CommandAcceptedResponse, status_code=202)
async def stop(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("stop", orchestrator.stop(), orchestrator)


@router.post("/next", response_model=CommandAcceptedResponse, status_code=202)
async def next_item(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("next", orchestrator.next(), orchestrator)


@router.post("/prev", response_model=CommandAcceptedResponse, status_code=202)
async def prev_item(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("prev", orchestrator.prev(), orchestrator)


@router.post("/seek", response_model=CommandAcceptedResponse, status_code=202)
async def seek(request: SeekRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Step one item forward (offset > 0) or backward (offset < 0)."""
    return await _settle("seek", orchestrator.seek_by_offset(request.offset), orchestrator)


@router.post("/seek-to-time", response_model=CommandAcceptedResponse, status_code=202)
async def seek_to_time(request: SeekToTimeRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Seek to a position (seconds) on the section timeline."""
    return await _settle("seek-to-time", orchestrator.seek_to_time(request.seconds), orchestrator)


@router.post("/jump", response_model=CommandAcceptedResponse, status_code=202)
async def jump(request: JumpRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("jump", orchestrator.jump_to(request.index), orchestrator)


# ============================================================================
# Voice, speed, provider
# ============================================================================

@router.post("/speed", response_model=CommandAcceptedResponse, status_code=202)
async def set_speed(request: SpeedRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    if not PLAYBACK_MIN_SPEED <= request.speed <= PLAYBACK_MAX_SPEED:
        raise PlaybackCommandError(
            "PLAYBACK_INVALID_SPEED",
            status_code=400,
            speed=request.speed,
            min=PLAYBACK_MIN_SPEED,
            max=PLAYBACK_MAX_SPEED
        )
    return await _settle("speed", orchestrator.set_speed(request.speed), orchestrator)


@router.post("/voice", response_model=CommandAcceptedResponse, status_code=202)
async def set_voice(request: VoiceRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    return await _settle("voice", orchestrator.set_voice(request.voice_id), orchestrator)


@router.post("/provider", response_model=CommandAcceptedResponse, status_code=202)
async def set_provider(request: ProviderRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    if not orchestrator.provider_manager.is_known_provider(request.provider_id):
        raise PlaybackCommandError(
            "PLAYBACK_UNKNOWN_PROVIDER",
            status_code=400,
            providerId=request.provider_id
        )
    return await _settle(
        "provider",
        orchestrator.set_provider(request.provider_id, **request.config),
        orchestrator
    )


@router.get("/voices", response_model=VoicesListResponse)
async def get_voices(orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Voices offered by the active provider."""
    voices = await orchestrator.get_voices() or []
    provider = orchestrator.active_provider
    return VoicesListResponse(
        provider_id=provider.provider_id if provider else orchestrator.settings.provider_id,
        voices=[VoiceResponse.model_validate(voice.model_dump()) for voice in voices]
    )


@router.post("/voices/{voice_id}/download", response_model=CommandAcceptedResponse, status_code=202)
async def download_voice(voice_id: str, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Install a voice; progress is streamed as voice.download_progress events."""
    ok = await orchestrator.download_voice(voice_id)
    if not ok:
        logger.debug(f"Voice download of {voice_id} reported as failed")
    return CommandAcceptedResponse(accepted=ok, command="download-voice", status=orchestrator.status)


@router.post("/preview", response_model=CommandAcceptedResponse, status_code=202)
async def preview(request: PreviewRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Speak sample text with the current voice and speed."""
    return await _settle("preview", orchestrator.preview(request.text), orchestrator)


@router.put("/preferences", response_model=CommandAcceptedResponse)
async def update_preferences(
    request: PlaybackPreferencesRequest,
    orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)
):
    """Toggle pre-roll announcements and smart resume."""
    changes = request.model_dump(exclude_none=True)
    if "preroll_enabled" in changes:
        orchestrator.set_preroll_enabled(changes["preroll_enabled"])
    if "smart_resume_enabled" in changes:
        orchestrator.set_smart_resume_enabled(changes["smart_resume_enabled"])

    await broadcaster.broadcast_settings_update(
        orchestrator.settings.model_dump(mode="json", by_alias=True)
    )
    return CommandAcceptedResponse(command="preferences", status=orchestrator.status)


# ============================================================================
# Book, sections, queue
# ============================================================================

@router.post("/book", response_model=CommandAcceptedResponse, status_code=202)
async def set_book(request: BookRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """
    Make a book the active one.

    Sections sent with the request are registered with the in-memory
    content pipeline first.
    """
    if request.sections is not None:
        pipeline = orchestrator.content_pipeline
        if not isinstance(pipeline, StaticContentPipeline):
            raise PlaybackCommandError("PLAYBACK_SECTIONS_NOT_SUPPORTED", status_code=400)

        pipeline.add_book(request.book_id, [
            (
                SectionInfo(
                    section_id=section.section_id,
                    title=section.title,
                    character_count=section.character_count
                ),
                SectionContent(
                    title=section.title,
                    sentences=[
                        SentenceSegment(
                            text=sentence.text,
                            location_id=sentence.location_id,
                            source_indices=tuple(sentence.source_indices)
                        )
                        for sentence in section.sentences
                    ],
                    book_title=section.book_title,
                    author=section.author,
                    cover_url=section.cover_url
                )
            )
            for section in request.sections
        ])

    return await _settle("book", orchestrator.set_book(request.book_id), orchestrator)


@router.post("/section", response_model=CommandAcceptedResponse, status_code=202)
async def load_section(request: LoadSectionRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Load a section by index or id (autoPlay starts narration)."""
    _require_book(orchestrator)

    if request.section_id is not None:
        future = orchestrator.load_section_by_id(request.section_id, request.auto_play)
    elif request.section_index is not None:
        future = orchestrator.load_section(request.section_index, request.auto_play)
    else:
        raise PlaybackCommandError("PLAYBACK_INVALID_COMMAND", status_code=400, reason="sectionIndex or sectionId required")

    return await _settle("section", future, orchestrator)


@router.post("/skip-mask", response_model=CommandAcceptedResponse, status_code=202)
async def set_skip_mask(request: SkipMaskRequest, orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)):
    """Exclude raw segment indices from narration."""
    return await _settle("skip-mask", orchestrator.set_skip_mask(request.indices), orchestrator)


@router.post("/table-adaptations", response_model=CommandAcceptedResponse, status_code=202)
async def apply_table_adaptations(
    request: TableAdaptationsRequest,
    orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)
):
    """Replace the cells of tables in the current queue with spoken renditions."""
    return await _settle(
        "table-adaptations", orchestrator.apply_table_adaptations(request.adaptations), orchestrator
    )


# ============================================================================
# Reading history
# ============================================================================

@router.get("/history", response_model=ReadingHistoryResponse)
async def get_history(
    book_id: Optional[str] = Query(None, alias="bookId"),
    orchestrator: PlaybackOrchestrator = Depends(get_orchestrator)
):
    """Reading history of a book (defaults to the active one), newest first."""
    book_id = book_id or _require_book(orchestrator)
    if orchestrator.repository is None:
        return ReadingHistoryResponse(entries=[])

    entries = orchestrator.repository.get_reading_history(book_id)
    return ReadingHistoryResponse(entries=[
        ReadingHistoryEntryResponse(
            book_id=entry["book_id"],
            location_id=entry["location_id"],
            source=entry["source"],
            label=entry.get("label"),
            completed=entry["completed"],
            created_at=entry["created_at"]
        )
        for entry in entries
    ])
