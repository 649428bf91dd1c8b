"""API endpoints for lexicon (pronunciation) rules."""
import sqlite3
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query
from loguru import logger

from db.database import get_db
from db.lexicon_repository import LexiconRepository
from core.exceptions import ApplicationError
from core.playback_orchestrator import get_playback_orchestrator
from core.pronunciation_transformer import get_pronunciation_transformer
from models.pronunciation_models import (
    LexiconRule,
    LexiconRuleCreate,
    LexiconRuleUpdate,
    LexiconTestRequest
)
from models.response_models import (
    LexiconRuleResponse,
    LexiconRulesListResponse,
    LexiconTestResponse,
    MessageResponse
)
from services.event_broadcaster import broadcaster, EventType

router = APIRouter(prefix="/api/pronunciation", tags=["pronunciation"])


def get_lexicon_repo(db: sqlite3.Connection = Depends(get_db)) -> LexiconRepository:
    """Get lexicon repository instance."""
    return LexiconRepository(db)


def _to_response(rule: LexiconRule) -> LexiconRuleResponse:
    return LexiconRuleResponse(
        id=rule.id,
        pattern=rule.pattern,
        replacement=rule.replacement,
        is_regex=rule.is_regex,
        book_id=rule.book_id,
        is_active=rule.is_active,
        order_index=rule.order_index,
        created_at=rule.created_at.isoformat(),
        updated_at=rule.updated_at.isoformat()
    )


async def _rules_changed(rule: LexiconRule, event_type: str) -> None:
    """Broadcast a rule change and drop the playback rule cache."""
    await broadcaster.broadcast_lexicon_update(
        {
            "ruleId": rule.id,
            "pattern": rule.pattern,
            "replacement": rule.replacement,
            "bookId": rule.book_id,
            "isRegex": rule.is_regex,
            "isActive": rule.is_active,
        },
        event_type=event_type
    )
    get_playback_orchestrator().invalidate_lexicon()


@router.get("/rules", response_model=LexiconRulesListResponse)
async def get_rules(
    book_id: Optional[str] = Query(None, alias="bookId"),
    active_only: bool = Query(False, alias="activeOnly"),
    repo: LexiconRepository = Depends(get_lexicon_repo)
):
    """
    List lexicon rules.

    With bookId, only the rules applied to that book are returned
    (its own rules, then global ones).
    """
    try:
        if book_id:
            rules = repo.get_rules_for_book(book_id)
        else:
            rules = repo.get_all()
            if active_only:
                rules = [r for r in rules if r.is_active]

        return LexiconRulesListResponse(
            rules=[_to_response(rule) for rule in rules],
            total=len(rules)
        )

    except Exception as e:
        logger.error(f"Failed to get lexicon rules: {e}")
        raise HTTPException(status_code=500, detail=f"[LEXICON_RULES_GET_FAILED]error:{str(e)}")


@router.post("/rules", response_model=LexiconRuleResponse, status_code=201)
async def create_rule(
    rule_data: LexiconRuleCreate,
    repo: LexiconRepository = Depends(get_lexicon_repo)
):
    """Create a new lexicon rule."""
    try:
        rule = repo.create(rule_data)
        await _rules_changed(rule, EventType.LEXICON_RULE_CREATED)

        logger.info(f"✓ Lexicon rule created: {rule.pattern} → {rule.replacement}")
        return _to_response(rule)

    except Exception as e:
        logger.error(f"Failed to create lexicon rule: {e}")
        raise HTTPException(status_code=500, detail=f"[LEXICON_RULE_CREATE_FAILED]error:{str(e)}")


@router.put("/rules/{rule_id}", response_model=LexiconRuleResponse)
async def update_rule(
    rule_id: str,
    update_data: LexiconRuleUpdate,
    repo: LexiconRepository = Depends(get_lexicon_repo)
):
    """Update a lexicon rule."""
    try:
        rule = repo.update(rule_id, update_data)
        if not rule:
            raise ApplicationError("LEXICON_RULE_NOT_FOUND", status_code=404, ruleId=rule_id)

        await _rules_changed(rule, EventType.LEXICON_RULE_UPDATED)

        logger.info(f"✓ Lexicon rule updated: {rule.pattern} → {rule.replacement}")
        return _to_response(rule)

    except ApplicationError:
        raise
    except Exception as e:
        logger.error(f"Failed to update lexicon rule: {e}")
        raise HTTPException(status_code=500, detail=f"[LEXICON_RULE_UPDATE_FAILED]ruleId:{rule_id};error:{str(e)}")


@router.delete("/rules/{rule_id}", response_model=MessageResponse)
async def delete_rule(
    rule_id: str,
    repo: LexiconRepository = Depends(get_lexicon_repo)
):
    """Delete a lexicon rule."""
    try:
        rule = repo.get_by_id(rule_id)
        if not rule:
            raise ApplicationError("LEXICON_RULE_NOT_FOUND", status_code=404, ruleId=rule_id)

        if not repo.delete(rule_id):
            raise ApplicationError("LEXICON_RULE_DELETE_FAILED", status_code=500, ruleId=rule_id)

        await _rules_changed(rule, EventType.LEXICON_RULE_DELETED)

        logger.info(f"✓ Lexicon rule deleted: {rule.pattern}")
        return MessageResponse(success=True, message="Rule deleted successfully")

    except ApplicationError:
        raise
    except Exception as e:
        logger.error(f"Failed to delete lexicon rule: {e}")
        raise HTTPException(status_code=500, detail=f"[LEXICON_RULE_DELETE_FAILED]ruleId:{rule_id};error:{str(e)}")


@router.post("/test", response_model=LexiconTestResponse)
async def test_rules(
    request: LexiconTestRequest,
    repo: LexiconRepository = Depends(get_lexicon_repo)
):
    """Apply the stored rules of a book (or the global rules) to sample text."""
    try:
        rules = repo.get_rules_for_book(request.book_id)
        result = get_pronunciation_transformer().apply_rules(request.text, rules, request.book_id)

        return LexiconTestResponse(
            original_text=result.original_text,
            transformed_text=result.transformed_text,
            rules_applied=result.rules_applied
        )

    except Exception as e:
        logger.error(f"Failed to test lexicon rules: {e}")
        raise HTTPException(status_code=500, detail=f"[LEXICON_TEST_FAILED]error:{str(e)}")
