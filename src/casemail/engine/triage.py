"""Triage engine for stored, not yet processed records.

Labels each pending record with an escalation level and a suggested action:

    NO_ACTION  subject or sender carries a no-action signal (auto replies,
               delivery failures, no-reply senders); applying closes it
    COMPLEX    the record belongs to a complex category (higher courts,
               statutory reconsideration procedures)
    SIMPLE     everything else; a standard acknowledgement

Record lifecycle: pending -> triaged | closed. Triaged and closed records
are never looked at again, so re-scanning an unchanged store yields the
same decisions for the records still pending.

Scanning is read-only. apply_levels() and close_no_action() write the
decisions back.

Usage:
    from casemail.engine.triage import TriageEngine

    engine = TriageEngine(stores, config.triage)
    decisions = await engine.scan("EMAIL_COURTS_SUPREME_COURT")
    await engine.apply_levels(decisions, "EMAIL_COURTS_SUPREME_COURT")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from casemail.core.errors import RecordFormatError
from casemail.core.logging import get_logger
from casemail.db.store import iter_keys
from casemail.engine.records import StoredRecord, TriageLevel

if TYPE_CHECKING:
    from casemail.config_schema import TriageConfig
    from casemail.db.store import KVStore, StoreRegistry

logger = get_logger(__name__)

ACTION_RECONSIDERATION = "Generate response document + CE-File submission"
ACTION_COURT_FILING = "Draft reply with attachments for court filing"
ACTION_ACKNOWLEDGE = "Draft acknowledgement email"


@dataclass(frozen=True)
class TriageDecision:
    """Triage outcome for one record. Never persisted on its own."""

    key: str
    store: str
    sender: str
    subject: str
    date: str
    namespace: str
    level: TriageLevel
    reason: str
    suggested_action: str | None = None
    namespaces: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class ApplyResult:
    """Counts from writing decisions back to a store."""

    triaged: int = 0
    closed: int = 0
    skipped: int = 0

    @property
    def applied(self) -> int:
        return self.triaged + self.closed


class TriageEngine:
    """Determines and applies triage levels for pending records.

    Attributes:
        _stores: Store handles resolved at startup
        _signals: Lowercased no-action phrases
        _complex: Categories that escalate to COMPLEX
    """

    def __init__(self, stores: StoreRegistry, config: TriageConfig):
        self._stores = stores
        self._signals = [s.lower() for s in config.no_action_signals if s]
        self._complex = set(config.complex_categories)

    def determine(self, key: str, record: StoredRecord, store_name: str) -> TriageDecision:
        """Decide the triage level for one record (pure, no I/O)."""
        namespaces = record.namespaces or (store_name,)
        primary = namespaces[0]
        subject_lower = record.subject.lower()
        sender_lower = record.sender.lower()

        def decision(level: TriageLevel, reason: str, action: str | None) -> TriageDecision:
            return TriageDecision(
                key=key,
                store=store_name,
                sender=record.sender,
                subject=record.subject,
                date=record.date,
                namespace=primary,
                level=level,
                reason=reason,
                suggested_action=action,
                namespaces=namespaces,
            )

        for signal in self._signals:
            if signal in subject_lower or signal in sender_lower:
                return decision("NO_ACTION", f'Auto-dismiss: matches signal "{signal}"', None)

        for ns in namespaces:
            if ns in self._complex:
                action = (
                    ACTION_RECONSIDERATION
                    if "RECONSIDERATION" in ns.upper()
                    else ACTION_COURT_FILING
                )
                return decision("COMPLEX", f"Category {ns} requires full processing", action)

        return decision(
            "SIMPLE",
            "Standard correspondence - acknowledge and file",
            ACTION_ACKNOWLEDGE,
        )

    async def scan(self, store_name: str) -> list[TriageDecision]:
        """Decide levels for every pending record in a store (read-only).

        Records that vanish mid-scan or fail to parse are skipped.
        """
        store = self._stores.resolve(store_name)
        decisions: list[TriageDecision] = []
        skipped = 0

        async for key in iter_keys(store):
            record = await _load(store, key)
            if record is None:
                skipped += 1
                continue
            if record.status != "pending":
                continue
            decisions.append(self.determine(key, record, store.name))

        logger.info(
            "triage_scan_complete",
            store=store.name,
            pending=len(decisions),
            no_action=sum(1 for d in decisions if d.level == "NO_ACTION"),
            complex=sum(1 for d in decisions if d.level == "COMPLEX"),
            skipped_unreadable=skipped,
        )
        return decisions

    async def scan_all(self, store_names: list[str]) -> dict[str, list[TriageDecision]]:
        """Scan several stores; returns decisions per store name."""
        return {name: await self.scan(name) for name in store_names}

    async def apply_levels(self, decisions: list[TriageDecision], store_name: str) -> ApplyResult:
        """Write decisions back to a store.

        NO_ACTION records are closed (with closedAt); others become triaged.
        Records that vanished, no longer parse, or are no longer pending are
        left alone.
        """
        store = self._stores.resolve(store_name)
        result = ApplyResult()
        for d in decisions:
            outcome = await self._apply_one(store, d)
            if outcome == "closed":
                result.closed += 1
            elif outcome == "triaged":
                result.triaged += 1
            else:
                result.skipped += 1

        logger.info(
            "triage_levels_applied",
            store=store.name,
            triaged=result.triaged,
            closed=result.closed,
            skipped=result.skipped,
        )
        return result

    async def close_no_action(self, decisions: list[TriageDecision], store_name: str) -> int:
        """Close only the NO_ACTION decisions. Returns how many were closed."""
        no_action = [d for d in decisions if d.level == "NO_ACTION"]
        result = await self.apply_levels(no_action, store_name)
        return result.closed

    async def apply_everywhere(self, decisions: list[TriageDecision]) -> ApplyResult:
        """Apply each decision to its own store and every category store of the record.

        Keeps the copies of one message consistent across the matched store
        and its category stores. Counts are per record (key), not per copy:
        a record counts as updated if any of its copies was.
        """
        total = ApplyResult()
        for d in decisions:
            targets = [d.store] + [ns for ns in d.namespaces if ns != d.store]
            outcomes: set[str] = set()
            for name in targets:
                try:
                    store = self._stores.resolve(name)
                except KeyError:
                    logger.warning("triage_store_unknown", store=name, key=d.key)
                    continue
                outcomes.add(await self._apply_one(store, d))
            if "closed" in outcomes:
                total.closed += 1
            elif "triaged" in outcomes:
                total.triaged += 1
            else:
                total.skipped += 1
        return total

    async def _apply_one(self, store: KVStore, d: TriageDecision) -> str:
        record = await _load(store, d.key)
        if record is None or record.status != "pending":
            return "skipped"
        updated = record.with_triage(
            d.level, d.reason, d.suggested_action, now=datetime.now(UTC)
        )
        await store.put(d.key, updated.to_json())
        return updated.status


async def _load(store: KVStore, key: str) -> StoredRecord | None:
    """Read and decode a record; None if missing or malformed."""
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        return StoredRecord.from_json(raw, key=key)
    except RecordFormatError as e:
        logger.warning("record_malformed", store=store.name, key=key, error=str(e))
        return None
