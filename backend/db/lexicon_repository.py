"""Repository for lexicon (pronunciation) rule operations."""
import sqlite3
import uuid
from typing import List, Optional, Dict, Any
from datetime import datetime
from loguru import logger

from config import DB_LEXICON_RULES_LIMIT
from models.pronunciation_models import (
    LexiconRule,
    LexiconRuleCreate,
    LexiconRuleUpdate
)


def dict_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    """Convert sqlite3.Row to dictionary"""
    return dict(row)

class LexiconRepository:
    """Repository for lexicon rule database operations."""

    def __init__(self, db):
        self.db = db
        self.cursor = db.cursor()

    def create(self, rule_data: LexiconRuleCreate) -> LexiconRule:
        """Create a new lexicon rule."""
        try:
            rule_id = str(uuid.uuid4())
            now = datetime.now().isoformat()

            # Empty string means "global" in client payloads
            book_id = rule_data.book_id or None

            self.cursor.execute("""
                INSERT INTO lexicon_rules (
                    id, pattern, replacement, is_regex, book_id,
                    is_active, order_index, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                rule_id,
                rule_data.pattern,
                rule_data.replacement,
                rule_data.is_regex,
                book_id,
                rule_data.is_active,
                rule_data.order_index,
                now,
                now
            ))

            self.db.commit()
            return self.get_by_id(rule_id)

        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create lexicon rule: {e}")
            raise

    def get_by_id(self, rule_id: str) -> Optional[LexiconRule]:
        """Get a rule by ID."""
        self.cursor.execute("""
            SELECT * FROM lexicon_rules WHERE id = ?
        """, (rule_id,))

        row = self.cursor.fetchone()
        if not row:
            return None

        return self._row_to_model(row)

    def get_rules_for_book(self, book_id: Optional[str] = None) -> List[LexiconRule]:
        """
        Active rules applicable to a book, in application order.

        Book rules come first so they can override global ones.
        """
        rules = []

        if book_id:
            self.cursor.execute("""
                SELECT * FROM lexicon_rules
                WHERE book_id = ?
                AND is_active = 1
                ORDER BY order_index ASC, created_at ASC
            """, (book_id,))
            rules.extend([self._row_to_model(row) for row in self.cursor.fetchall()])

        self.cursor.execute("""
            SELECT * FROM lexicon_rules
            WHERE book_id IS NULL
            AND is_active = 1
            ORDER BY order_index ASC, created_at ASC
        """)
        rules.extend([self._row_to_model(row) for row in self.cursor.fetchall()])

        return rules

    def update(self, rule_id: str, update_data: LexiconRuleUpdate) -> Optional[LexiconRule]:
        """Update a lexicon rule."""
        fields = []
        values = []

        # SECURITY: Whitelist allowed fields to prevent SQL injection
        ALLOWED_FIELDS = {'pattern', 'replacement', 'is_regex', 'is_active', 'order_index'}

        for field, value in update_data.model_dump(exclude_unset=True).items():
            if field not in ALLOWED_FIELDS:
                logger.warning(f"Attempted to update disallowed field: {field}")
                continue

            fields.append(f"{field} = ?")
            values.append(value)

        if not fields:
            return self.get_by_id(rule_id)

        fields.append("updated_at = ?")
        values.append(datetime.now().isoformat())
        values.append(rule_id)

        query = f"""
            UPDATE lexicon_rules
            SET {', '.join(fields)}
            WHERE id = ?
        """

        # Field names validated against whitelist, values parameterized
        self.cursor.execute(query, values)
        self.db.commit()

        return self.get_by_id(rule_id)

    def delete(self, rule_id: str) -> bool:
        """Delete a lexicon rule."""
        self.cursor.execute("""
            DELETE FROM lexicon_rules WHERE id = ?
        """, (rule_id,))
        self.db.commit()

        return self.cursor.rowcount > 0

    def delete_by_book(self, book_id: str) -> int:
        """Delete all rules scoped to a book.

        Returns:
            Number of deleted rules
        """
        self.cursor.execute("""
            DELETE FROM lexicon_rules WHERE book_id = ?
        """, (book_id,))
        self.db.commit()

        return self.cursor.rowcount

    def get_all(self, limit: int = DB_LEXICON_RULES_LIMIT) -> List[LexiconRule]:
        """Get all lexicon rules, active or not."""
        self.cursor.execute("""
            SELECT * FROM lexicon_rules
            ORDER BY book_id IS NOT NULL DESC, order_index ASC, created_at ASC
            LIMIT ?
        """, (limit,))

        return [self._row_to_model(row) for row in self.cursor.fetchall()]

    def _row_to_model(self, row) -> LexiconRule:
        """Convert database row to model."""
        data = dict_from_row(row)

        data['is_regex'] = bool(data['is_regex'])
        data['is_active'] = bool(data['is_active'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return LexiconRule(**data)
