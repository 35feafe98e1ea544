"""Incremental message retrieval with exclusion, cutoff and dedup.

Each run:
1. Collects message IDs from the exclusion folders (Spam, Trash). A folder
   that fails to load contributes nothing; the run continues.
2. Fetches the unified "All Mail" view. Failure here is fatal.
3. Drops excluded messages, then messages not strictly newer than the
   watermark, then repeated message IDs (first occurrence wins).
4. Reports the newest surviving date as the next watermark. Messages
   whose date could not be parsed never move the watermark, and are
   dropped at the cutoff once a watermark exists.

The watermark is an explicit argument and return value; the retriever
keeps no state between runs.

Usage:
    from casemail.mail.retriever import Retriever

    retriever = Retriever(client, config.mail_source)
    result = retriever.fetch(watermark)
    for message in result.messages:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from casemail.core.errors import MailSourceError
from casemail.core.logging import get_logger
from casemail.mail.models import Message

if TYPE_CHECKING:
    from casemail.config_schema import MailSourceConfig
    from casemail.mail.client import MailSourceClient

logger = get_logger(__name__)


@dataclass
class FetchResult:
    """Outcome of one retrieval.

    Attributes:
        fetched: Messages returned by the unified view
        spam_trash_excluded: Dropped because their ID is in an exclusion folder
        older_than_cutoff: Dropped because they are not newer than the watermark
        duplicates: Dropped because their ID was already seen in this batch
        messages: Surviving messages, in source order
        new_watermark: Newest parsed date among survivors, or None
    """

    fetched: int = 0
    spam_trash_excluded: int = 0
    older_than_cutoff: int = 0
    duplicates: int = 0
    messages: list[Message] = field(default_factory=list)
    new_watermark: datetime | None = None

    @property
    def inbound(self) -> int:
        return len(self.messages)


class Retriever:
    """Fetches new inbound messages from the mail source.

    Attributes:
        _client: MailSourceClient for the backend calls
        _config: Folder names, limit and timeouts
    """

    def __init__(self, client: MailSourceClient, config: MailSourceConfig):
        self._client = client
        self._config = config

    def fetch(self, watermark: datetime | None = None) -> FetchResult:
        """Retrieve messages newer than the watermark.

        Args:
            watermark: Date of the newest message processed by an earlier
                run, or None to take everything

        Returns:
            FetchResult with surviving messages, drop counts and the new
            watermark

        Raises:
            MailSourceError: If the unified mailbox view cannot be fetched
        """
        excluded_ids = self._collect_excluded_ids()

        raw_emails = self._client.fetch_folder(
            self._config.all_mail_folder,
            limit=self._config.fetch_limit,
            timeout=self._config.fetch_timeout_seconds,
        )
        messages = [Message.from_wire(payload) for payload in raw_emails]

        result = filter_messages(messages, excluded_ids, watermark)

        logger.info(
            "retrieval_complete",
            fetched=result.fetched,
            spam_trash_excluded=result.spam_trash_excluded,
            older_than_cutoff=result.older_than_cutoff,
            duplicates=result.duplicates,
            inbound=result.inbound,
            watermark=watermark.isoformat() if watermark else None,
            new_watermark=result.new_watermark.isoformat() if result.new_watermark else None,
        )
        return result

    def _collect_excluded_ids(self) -> set[str]:
        """Message IDs found in the exclusion folders, best effort."""
        excluded: set[str] = set()
        for folder in self._config.exclude_folders:
            try:
                emails = self._client.fetch_folder(
                    folder,
                    timeout=self._config.exclude_timeout_seconds,
                )
            except MailSourceError as e:
                logger.warning(
                    "exclusion_folder_unavailable",
                    folder=folder,
                    status_code=e.status_code,
                    error=str(e),
                )
                continue
            excluded.update(email["messageId"] for email in emails if email.get("messageId"))
        return excluded


def filter_messages(
    messages: list[Message],
    excluded_ids: set[str],
    watermark: datetime | None,
) -> FetchResult:
    """Apply exclusion, cutoff and dedup to a fetched batch.

    Args:
        messages: Messages from the unified view, in source order
        excluded_ids: Message IDs to drop
        watermark: Only messages strictly newer than this survive. When it
            is set, messages whose date could not be parsed are dropped too

    Returns:
        FetchResult with counts per drop reason
    """
    result = FetchResult(fetched=len(messages))

    not_excluded = [m for m in messages if m.message_id not in excluded_ids]
    result.spam_trash_excluded = len(messages) - len(not_excluded)

    if watermark is not None:
        # An unparseable date cannot be compared with the watermark
        after_cutoff = [m for m in not_excluded if m.date_valid and m.date > watermark]
        result.older_than_cutoff = len(not_excluded) - len(after_cutoff)
    else:
        after_cutoff = not_excluded

    seen: set[str] = set()
    for message in after_cutoff:
        if message.message_id in seen:
            result.duplicates += 1
            continue
        seen.add(message.message_id)
        result.messages.append(message)

    dated = [m.date for m in result.messages if m.date_valid]
    if dated:
        result.new_watermark = max(dated)

    return result
