"""
Response Models with Automatic camelCase Conversion

This module provides Pydantic response models for FastAPI endpoints with automatic
snake_case (Python) to camelCase (JSON) conversion for frontend compatibility.

Example:
    @router.get("/state", response_model=PlaybackStateResponse)
    async def get_state():
        return PlaybackStateResponse(status="playing", current_index=3, ...)

Data Flow:
    Orchestrator / Repository (snake_case)
        ↓
    Pydantic Response Model (validates + converts)
        ↓
    JSON Response (camelCase)
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List


def to_camel(string: str) -> str:
    """
    Convert snake_case string to camelCase.

    Examples:
        location_id → locationId
        current_index → currentIndex
        is_announcement → isAnnouncement
    """
    components = string.split('_')
    return components[0] + ''.join(x.title() for x in components[1:])


class CamelCaseModel(BaseModel):
    """
    Base model with automatic snake_case to camelCase conversion.

    Configuration:
        - alias_generator: Converts field names to camelCase in JSON
        - populate_by_name: Allows both snake_case and camelCase in input
        - from_attributes: Allows creating from model instances
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


# ============================================================================
# Playback Response Models
# ============================================================================

class QueueItemResponse(CamelCaseModel):
    """Queue item as exposed to clients."""
    text: str
    location_id: Optional[str] = None
    is_announcement: bool = False
    is_skipped: bool = False
    source_indices: List[int] = []
    title: Optional[str] = None


class PlaybackStateResponse(CamelCaseModel):
    """Current playback state (status, position, queue, timeline)."""
    status: str
    book_id: Optional[str] = None
    provider_id: str
    voice_id: Optional[str] = None
    speed: float
    active_location_id: Optional[str] = None
    current_index: int
    current_section_index: int
    total_duration: float = Field(..., description="Estimated section duration in seconds (skips masked items)")
    remaining_duration: float
    queue: List[QueueItemResponse] = []
    last_error: Optional[str] = None


class CommandAcceptedResponse(CamelCaseModel):
    """Command settled on the playback task chain."""
    accepted: bool = True
    command: str
    status: str


class VoiceResponse(CamelCaseModel):
    """Voice offered by the active provider."""
    id: str
    name: str
    language: str
    provider_id: str
    is_downloaded: bool


class VoicesListResponse(CamelCaseModel):
    """Voices of the active provider."""
    provider_id: str
    voices: List[VoiceResponse]


class ReadingHistoryEntryResponse(CamelCaseModel):
    """One reading-history record."""
    book_id: str
    location_id: str
    source: str
    label: Optional[str] = None
    completed: bool
    created_at: str


class ReadingHistoryResponse(CamelCaseModel):
    """Reading history for a book, newest first."""
    entries: List[ReadingHistoryEntryResponse]


# ============================================================================
# Lexicon Response Models
# ============================================================================

class LexiconRuleResponse(CamelCaseModel):
    """Pronunciation (lexicon) rule."""
    id: str
    pattern: str
    replacement: str
    is_regex: bool
    book_id: Optional[str] = None
    is_active: bool
    order_index: int = 0
    created_at: str
    updated_at: str


class LexiconRulesListResponse(CamelCaseModel):
    """List of lexicon rules."""
    rules: List[LexiconRuleResponse]
    total: int


class LexiconTestResponse(CamelCaseModel):
    """Result of applying rules to sample text."""
    original_text: str
    transformed_text: str
    rules_applied: List[str]


class MessageResponse(CamelCaseModel):
    """Generic success message."""
    success: bool = True
    message: str
