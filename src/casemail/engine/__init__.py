"""Pipeline engines.

- Record keys and stored record format
- Router writing messages into the raw, matched and category stores
- Triage engine labelling pending records
- Orchestrator sequencing retrieval, routing and triage
"""

from casemail.engine.pipeline import PipelineOrchestrator, RunSummary
from casemail.engine.records import (
    StoredRecord,
    base_key,
    derive_key,
    key_for,
    sanitize_sender,
)
from casemail.engine.router import MessageRouter, RouteResult
from casemail.engine.triage import ApplyResult, TriageDecision, TriageEngine

__all__ = [
    # Records
    "StoredRecord",
    "base_key",
    "derive_key",
    "key_for",
    "sanitize_sender",
    # Router
    "MessageRouter",
    "RouteResult",
    # Triage
    "ApplyResult",
    "TriageDecision",
    "TriageEngine",
    # Orchestrator
    "PipelineOrchestrator",
    "RunSummary",
]
