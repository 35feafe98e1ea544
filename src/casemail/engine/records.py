"""Record keys and the stored record format.

Key format: {YYYY}.{MM}.{DD}_{sender}_{HH}-{MM}-{SS}_{digest}
Example:    2026.02.09_casework_ico_org_uk_10-30-45_5f3c9a1e

- Date and time are the message date in UTC.
- sender is the From header with '@' and '.' replaced by '_', lowercased.
- digest is the first 8 hex chars of SHA-256(Message-ID). Two messages from
  the same sender in the same second get different keys, while routing the
  same message again lands on the same key.

Value: JSON object with the message fields plus pipeline metadata
(namespaces, storedAt, status and triage fields).
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

from casemail.core.errors import RecordFormatError
from casemail.mail.models import Message, format_timestamp

RecordStatus = Literal["pending", "triaged", "closed"]
TriageLevel = Literal["NO_ACTION", "SIMPLE", "COMPLEX"]

RECORD_STATUSES: tuple[str, ...] = ("pending", "triaged", "closed")
TRIAGE_LEVELS: tuple[str, ...] = ("NO_ACTION", "SIMPLE", "COMPLEX")

DIGEST_LENGTH = 8


def sanitize_sender(sender: str) -> str:
    """Replace '@' and '.' with '_' and lowercase."""
    return sender.replace("@", "_").replace(".", "_").lower()


def base_key(sender: str, date: datetime) -> str:
    """Timestamp-and-sender part of a key, without the Message-ID digest."""
    d = date.astimezone(UTC)
    return (
        f"{d.year}.{d.month:02d}.{d.day:02d}_{sanitize_sender(sender)}_"
        f"{d.hour:02d}-{d.minute:02d}-{d.second:02d}"
    )


def message_digest(message_id: str) -> str:
    return hashlib.sha256(message_id.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]


def derive_key(sender: str, date: datetime, message_id: str) -> str:
    """Storage key for a message; identical in every store it is written to."""
    return f"{base_key(sender, date)}_{message_digest(message_id)}"


def key_for(message: Message) -> str:
    return derive_key(message.sender, message.date, message.message_id)


@dataclass(frozen=True)
class StoredRecord:
    """A message as persisted in the raw, matched and category stores.

    Content fields are written once by the router. The triage engine only
    ever replaces status and triage fields (see with_triage).
    """

    sender: str
    to: str
    subject: str
    date: str
    message_id: str
    body: str
    namespaces: tuple[str, ...] = field(default_factory=tuple)
    stored_at: str = ""
    status: RecordStatus = "pending"
    triage_level: TriageLevel | None = None
    triage_reason: str | None = None
    triage_suggested_action: str | None = None
    closed_at: str | None = None

    @classmethod
    def from_message(
        cls,
        message: Message,
        namespaces: tuple[str, ...] | list[str] = (),
        stored_at: datetime | None = None,
    ) -> StoredRecord:
        return cls(
            sender=message.sender,
            to=message.to,
            subject=message.subject,
            date=format_timestamp(message.date),
            message_id=message.message_id,
            body=message.body,
            namespaces=tuple(namespaces),
            stored_at=format_timestamp(stored_at or datetime.now(UTC)),
        )

    def with_triage(
        self,
        level: TriageLevel,
        reason: str,
        suggested_action: str | None,
        now: datetime | None = None,
    ) -> StoredRecord:
        """Copy with triage fields set; NO_ACTION closes the record."""
        if level == "NO_ACTION":
            return replace(
                self,
                status="closed",
                triage_level=level,
                triage_reason=reason,
                triage_suggested_action=suggested_action,
                closed_at=format_timestamp(now or datetime.now(UTC)),
            )
        return replace(
            self,
            status="triaged",
            triage_level=level,
            triage_reason=reason,
            triage_suggested_action=suggested_action,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "date": self.date,
            "messageId": self.message_id,
            "body": self.body,
            "namespaces": list(self.namespaces),
            "storedAt": self.stored_at,
            "status": self.status,
        }
        if self.triage_level is not None:
            data["triageLevel"] = self.triage_level
            data["triageReason"] = self.triage_reason
            data["triageSuggestedAction"] = self.triage_suggested_action
        if self.closed_at is not None:
            data["closedAt"] = self.closed_at
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str, key: str | None = None) -> StoredRecord:
        """Decode a stored value.

        Raises:
            RecordFormatError: If the value is not a JSON object or has an
                unknown status or triage level
        """
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise RecordFormatError(f"Record {key} is not valid JSON: {e}", key=key) from e
        if not isinstance(data, dict):
            raise RecordFormatError(f"Record {key} is not a JSON object", key=key)

        status = data.get("status", "pending")
        if status not in RECORD_STATUSES:
            raise RecordFormatError(f"Record {key} has unknown status {status!r}", key=key)
        level = data.get("triageLevel")
        if level is not None and level not in TRIAGE_LEVELS:
            raise RecordFormatError(f"Record {key} has unknown triage level {level!r}", key=key)
        namespaces = data.get("namespaces") or []
        if not isinstance(namespaces, list):
            raise RecordFormatError(f"Record {key} has non-list namespaces", key=key)

        return cls(
            sender=str(data.get("from") or ""),
            to=str(data.get("to") or ""),
            subject=str(data.get("subject") or ""),
            date=str(data.get("date") or ""),
            message_id=str(data.get("messageId") or ""),
            body=str(data.get("body") or ""),
            namespaces=tuple(str(ns) for ns in namespaces),
            stored_at=str(data.get("storedAt") or ""),
            status=status,
            triage_level=level,
            triage_reason=data.get("triageReason"),
            triage_suggested_action=data.get("triageSuggestedAction"),
            closed_at=data.get("closedAt"),
        )
