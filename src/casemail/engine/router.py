"""Routing of retrieved messages into the raw, matched and category stores.

For every message, in order:
1. Write to the raw store (namespaces empty).
2. Classify against the category rules.
3. If anything matched, write to the matched store and then to each
   matched category store.

All writes are unconditional upserts under the derived key, so running the
router twice over the same batch leaves the stores in the same state. A
storage failure propagates immediately; writes already made stay in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from casemail.classifier.rules import classify
from casemail.core.logging import get_logger
from casemail.engine.records import StoredRecord, key_for

if TYPE_CHECKING:
    from casemail.config_schema import CategoryRule
    from casemail.db.store import StoreRegistry
    from casemail.mail.models import Message

logger = get_logger(__name__)


@dataclass
class RouteResult:
    """Write counts for one routing pass."""

    raw_stored: int = 0
    matched_stored: int = 0
    per_category: dict[str, int] = field(default_factory=dict)


class MessageRouter:
    """Writes messages to every store they belong in.

    Attributes:
        _stores: Store handles resolved at startup
    """

    def __init__(self, stores: StoreRegistry):
        self._stores = stores

    async def route(self, messages: list[Message], rules: list[CategoryRule]) -> RouteResult:
        """Store a batch of messages.

        Args:
            messages: Messages from the retriever
            rules: Category rules in configured order

        Returns:
            RouteResult with per-store write counts

        Raises:
            StorageError: If any write fails
            KeyError: If a rule names a category with no registered store
        """
        result = RouteResult()
        now = datetime.now(UTC)

        for message in messages:
            key = key_for(message)

            raw_record = StoredRecord.from_message(message, stored_at=now)
            await self._stores.raw.put(key, raw_record.to_json())
            result.raw_stored += 1

            classification = classify(message, rules)
            if not classification.matched:
                logger.debug("message_unmatched", key=key)
                continue

            value = StoredRecord.from_message(
                message, namespaces=classification.categories, stored_at=now
            ).to_json()
            await self._stores.matched.put(key, value)
            result.matched_stored += 1

            for category in classification.categories:
                await self._stores.category(category).put(key, value)
                result.per_category[category] = result.per_category.get(category, 0) + 1

            logger.info("message_routed", key=key, categories=list(classification.categories))

        logger.info(
            "route_complete",
            raw_stored=result.raw_stored,
            matched_stored=result.matched_stored,
            categories_hit=len(result.per_category),
        )
        return result
