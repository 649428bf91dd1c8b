"""
Backend Models Package

Contains the playback domain models and the Pydantic response models for
FastAPI endpoints with automatic snake_case to camelCase conversion.
"""

from .response_models import (
    # Base
    CamelCaseModel,
    to_camel,

    # Playback
    QueueItemResponse,
    PlaybackStateResponse,
    CommandAcceptedResponse,
    VoiceResponse,
    VoicesListResponse,
    ReadingHistoryResponse,

    # Lexicon
    LexiconRuleResponse,
    LexiconRulesListResponse,

    # Generic
    MessageResponse,
)

__all__ = [
    # Base
    "CamelCaseModel",
    "to_camel",

    # Playback
    "QueueItemResponse",
    "PlaybackStateResponse",
    "CommandAcceptedResponse",
    "VoiceResponse",
    "VoicesListResponse",
    "ReadingHistoryResponse",

    # Lexicon
    "LexiconRuleResponse",
    "LexiconRulesListResponse",

    # Generic
    "MessageResponse",
]
