"""Message model and date handling for mail source payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from casemail.core.logging import get_logger

logger = get_logger(__name__)


def parse_message_date(value: str | None) -> datetime | None:
    """Parse an ISO-8601 or RFC 2822 date into an aware UTC datetime.

    Naive values are taken to be UTC.

    Returns:
        The parsed datetime, or None if the value is empty or unparseable
    """
    if not value:
        return None

    text = value.strip()
    parsed: datetime | None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            parsed = None

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC string used for watermarks and record dates."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class Message:
    """One message returned by the mail source.

    Attributes:
        sender: The From header (required; empty only if the source omits it)
        to: The To header, possibly empty
        subject: Subject line, possibly empty
        date: Source-supplied date, UTC
        message_id: Message-ID; the only stable identity across fetches
        body: Body text, already truncated by the mail source
        date_valid: False when the source sent a date that could not be
            parsed and `date` holds the fetch time instead
    """

    sender: str
    to: str
    subject: str
    date: datetime
    message_id: str
    body: str = ""
    date_valid: bool = True

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> Message:
        """Build a Message from one entry of a /fetch-emails response.

        Missing fields become empty strings. A missing or unparseable date
        becomes the current time. An unparseable one is also flagged with
        `date_valid=False` so the cutoff can drop it.
        """
        raw_date = payload.get("date") or ""
        date = parse_message_date(raw_date)
        date_valid = date is not None or not raw_date
        if date is None:
            if raw_date:
                logger.warning(
                    "message_date_unparseable",
                    value=str(raw_date)[:64],
                    message_id=payload.get("messageId") or "",
                )
            date = datetime.now(UTC)

        return cls(
            sender=payload.get("from") or "",
            to=payload.get("to") or "",
            subject=payload.get("subject") or "",
            date=date,
            message_id=payload.get("messageId") or "",
            body=payload.get("body") or "",
            date_valid=date_valid,
        )
