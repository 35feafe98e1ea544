"""casemail: incremental mailbox ingestion, case-category routing and triage."""

__version__ = "0.1.0"
