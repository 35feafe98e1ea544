"""Category rule matching.

A rule fires when ANY of its configured fields (from, to, subject) contains
ANY of that field's patterns, compared case-insensitively as plain
substrings. Every rule is evaluated for every message: a message usually
belongs to several categories at once (a court and a claimant, say), so
there is no first-match-wins.

No regex is used, so there is no ReDoS risk.

Usage:
    from casemail.classifier.rules import classify

    result = classify(message, config.categories)
    if result.matched:
        for category in result.categories:
            ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from casemail.core.logging import get_logger

if TYPE_CHECKING:
    from casemail.config_schema import CategoryRule
    from casemail.mail.models import Message

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """Categories a message was routed to.

    Attributes:
        categories: Matched categories, deduplicated, in first-match order
    """

    categories: tuple[str, ...] = field(default_factory=tuple)

    @property
    def matched(self) -> bool:
        return bool(self.categories)


def classify(message: Message, rules: list[CategoryRule]) -> ClassificationResult:
    """Evaluate every rule against a message.

    Args:
        message: Message to classify
        rules: Category rules in configured order

    Returns:
        ClassificationResult listing each matched category once
    """
    sender_lower = message.sender.lower()
    to_lower = message.to.lower()
    subject_lower = message.subject.lower()

    matched: list[str] = []
    for rule in rules:
        conditions = rule.conditions
        if (
            _contains_any(sender_lower, conditions.from_includes)
            or _contains_any(to_lower, conditions.to_includes)
            or _contains_any(subject_lower, conditions.subject_includes)
        ):
            matched.append(rule.category)

    categories = tuple(dict.fromkeys(matched))
    if categories:
        logger.debug(
            "message_classified",
            sender_domain=message.sender.split("@")[-1],
            categories=list(categories),
        )
    return ClassificationResult(categories=categories)


def _contains_any(field_lower: str, patterns: list[str]) -> bool:
    """Check if a lowercased field contains any pattern (case-insensitive)."""
    return any(pattern.lower() in field_lower for pattern in patterns if pattern)
