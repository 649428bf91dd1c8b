"""Text transformation for pronunciation correction."""
import re
import unicodedata
from functools import lru_cache
from typing import List, Optional, Pattern
from dataclasses import dataclass
from loguru import logger

from models.pronunciation_models import LexiconRule


@dataclass
class TransformationResult:
    """Result of applying pronunciation rules."""
    original_text: str
    transformed_text: str
    rules_applied: List[str]
    length_before: int
    length_after: int


def normalize_text(text: str) -> str:
    """NFKD-normalize so that rules match regardless of composed/decomposed input."""
    return unicodedata.normalize("NFKD", text)


@lru_cache(maxsize=512)
def compile_rule_pattern(pattern: str, is_regex: bool) -> Pattern:
    """
    Compile a rule pattern (case-insensitive).

    Literal patterns are escaped and anchored with word boundaries on the
    sides that start/end with a word character, so "Dr" does not match
    inside "Drive".

    Raises:
        re.error: Invalid regex pattern
    """
    normalized = normalize_text(pattern)
    if is_regex:
        return re.compile(normalized, re.IGNORECASE)

    escaped = re.escape(normalized)
    prefix = r"\b" if re.match(r"\w", normalized) else ""
    suffix = r"\b" if re.search(r"\w$", normalized) else ""
    return re.compile(f"{prefix}{escaped}{suffix}", re.IGNORECASE)


class PronunciationTransformer:
    """Transforms text using lexicon rules, in the order given."""

    def apply_rules(
        self,
        text: str,
        rules: List[LexiconRule],
        book_id: Optional[str] = None
    ) -> TransformationResult:
        """
        Apply lexicon rules to text.

        Args:
            text: Text about to be handed to a speech provider
            rules: Rules in application order
            book_id: If set, rules scoped to another book are ignored
        """
        original_text = text
        transformed_text = normalize_text(text)
        rules_applied = []

        for rule in rules:
            if not rule.is_active:
                continue
            if book_id is not None and rule.book_id not in (None, book_id):
                continue

            old_text = transformed_text

            try:
                pattern = compile_rule_pattern(rule.pattern, rule.is_regex)
                replacement = normalize_text(rule.replacement)

                if rule.is_regex:
                    # Convert JavaScript-style backreferences ($1, $2) to Python-style (\1, \2)
                    replacement = re.sub(r'\$(\d+)', r'\\\1', replacement)
                    transformed_text = pattern.sub(replacement, transformed_text)
                else:
                    # Literal replacement: no backreference expansion
                    transformed_text = pattern.sub(lambda _m: replacement, transformed_text)

                if old_text != transformed_text:
                    rules_applied.append(f"{rule.pattern} → {rule.replacement}")
                    logger.debug(f"[Lexicon] Applied rule: {rule.pattern} → {rule.replacement}")

            except re.error as e:
                logger.error(f"[Lexicon] Invalid regex pattern '{rule.pattern}': {e}")
                continue

        return TransformationResult(
            original_text=original_text,
            transformed_text=transformed_text,
            rules_applied=rules_applied,
            length_before=len(original_text),
            length_after=len(transformed_text)
        )

    def transform(self, text: str, rules: List[LexiconRule]) -> str:
        """Shortcut returning only the transformed text."""
        if not rules:
            return text
        return self.apply_rules(text, rules).transformed_text


_transformer: Optional[PronunciationTransformer] = None


def get_pronunciation_transformer() -> PronunciationTransformer:
    """Get the shared transformer instance."""
    global _transformer
    if _transformer is None:
        _transformer = PronunciationTransformer()
    return _transformer
