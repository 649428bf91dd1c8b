"""
Tests for LexiconRepository
"""

from db.lexicon_repository import LexiconRepository
from models.pronunciation_models import LexiconRuleCreate, LexiconRuleUpdate


class TestLexiconRepository:
    """CRUD and rule ordering."""

    def test_create_and_get(self, db):
        repo = LexiconRepository(db)
        rule = repo.create(LexiconRuleCreate(pattern="Dr.", replacement="Doctor"))

        fetched = repo.get_by_id(rule.id)
        assert fetched.pattern == "Dr."
        assert fetched.book_id is None
        assert fetched.is_active is True

    def test_empty_book_id_means_global(self, db):
        """Clients send '' for global rules."""
        repo = LexiconRepository(db)
        rule = repo.create(LexiconRuleCreate(pattern="a", replacement="b", book_id=""))
        assert rule.book_id is None

    def test_book_rules_before_global_rules(self, db):
        """Rules of the book come first, then global rules; inactive ones are left out."""
        repo = LexiconRepository(db)
        repo.create(LexiconRuleCreate(pattern="global", replacement="g"))
        repo.create(LexiconRuleCreate(pattern="book", replacement="b", book_id="book-1"))
        repo.create(LexiconRuleCreate(pattern="other", replacement="o", book_id="book-2"))
        repo.create(LexiconRuleCreate(pattern="off", replacement="x", is_active=False))

        patterns = [r.pattern for r in repo.get_rules_for_book("book-1")]
        assert patterns == ["book", "global"]

    def test_order_index_sorts_within_scope(self, db):
        repo = LexiconRepository(db)
        repo.create(LexiconRuleCreate(pattern="second", replacement="2", order_index=2))
        repo.create(LexiconRuleCreate(pattern="first", replacement="1", order_index=1))
        assert [r.pattern for r in repo.get_rules_for_book(None)] == ["first", "second"]

    def test_update_changes_given_fields(self, db):
        """Only the fields that were set are written."""
        repo = LexiconRepository(db)
        rule = repo.create(LexiconRuleCreate(pattern="a", replacement="b"))

        updated = repo.update(rule.id, LexiconRuleUpdate(replacement="c", is_active=False))
        assert updated.replacement == "c"
        assert updated.is_active is False
        assert updated.updated_at >= rule.updated_at

    def test_update_unknown_rule_returns_none(self, db):
        repo = LexiconRepository(db)
        assert repo.update("missing", LexiconRuleUpdate(replacement="x")) is None

    def test_delete(self, db):
        repo = LexiconRepository(db)
        rule = repo.create(LexiconRuleCreate(pattern="a", replacement="b"))
        assert repo.delete(rule.id) is True
        assert repo.delete(rule.id) is False
        assert repo.get_by_id(rule.id) is None

    def test_delete_by_book(self, db):
        repo = LexiconRepository(db)
        repo.create(LexiconRuleCreate(pattern="a", replacement="b", book_id="book-1"))
        repo.create(LexiconRuleCreate(pattern="c", replacement="d", book_id="book-1"))
        repo.create(LexiconRuleCreate(pattern="e", replacement="f"))
        assert repo.delete_by_book("book-1") == 2
        assert len(repo.get_all()) == 1
