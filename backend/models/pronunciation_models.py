"""Pydantic models for pronunciation (lexicon) rules."""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict
from models.response_models import to_camel

class LexiconRuleBase(BaseModel):
    """Base model for lexicon rules."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True
    )

    pattern: str = Field(..., min_length=1, max_length=500)
    replacement: str = Field(..., max_length=500)
    is_regex: bool = False
    book_id: Optional[str] = None  # None = applies to every book
    is_active: bool = True
    order_index: int = 0

class LexiconRuleCreate(LexiconRuleBase):
    """Model for creating a lexicon rule."""
    pass

class LexiconRuleUpdate(BaseModel):
    """Model for updating a lexicon rule."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    pattern: Optional[str] = Field(None, min_length=1, max_length=500)
    replacement: Optional[str] = Field(None, max_length=500)
    is_regex: Optional[bool] = None
    is_active: Optional[bool] = None
    order_index: Optional[int] = None

class LexiconRule(LexiconRuleBase):
    """Complete lexicon rule model."""
    id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

class LexiconTestRequest(BaseModel):
    """Request model for testing lexicon rules against sample text."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text: str = Field(..., min_length=1, max_length=2000)
    book_id: Optional[str] = None
