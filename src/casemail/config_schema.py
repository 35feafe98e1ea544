"""Pydantic configuration schema for casemail.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from casemail.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Default no-action signals, matched against lowercased subject and sender
DEFAULT_NO_ACTION_SIGNALS = [
    "delivery notification",
    "read receipt",
    "out of office",
    "automatic reply",
    "undeliverable",
    "noreply",
    "no-reply",
]

# Categories whose correspondence needs a full document or filing response
DEFAULT_COMPLEX_CATEGORIES = [
    "EMAIL_RECONSIDERATION_CPR52_24_5",
    "EMAIL_RECONSIDERATION_CPR52_24_6",
    "EMAIL_RECONSIDERATION_CPR52_30",
    "EMAIL_RECONSIDERATION_PD52B",
    "EMAIL_COURTS_SUPREME_COURT",
    "EMAIL_COURTS_COURT_OF_APPEALS_CIVIL_DIVISION",
]


def _validate_store_name(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Store name cannot be empty")
    if any(ch.isspace() for ch in v):
        raise ValueError("Store name cannot contain whitespace")
    return v


class MailSourceConfig(BaseModel):
    """Connection settings for the mail source backend."""

    base_url: str = Field(
        default="http://localhost:4000",
        description="Base URL of the mail source (serves /fetch-emails and /health)",
    )
    all_mail_folder: str = Field(
        default="All Mail",
        description="Unified mailbox view fetched on every run",
    )
    exclude_folders: list[str] = Field(
        default=["Spam", "Trash"],
        description="Folders whose message IDs are excluded from the run",
    )
    fetch_limit: int | None = Field(
        default=None,
        ge=1,
        description="Optional cap on messages returned for the unified view",
    )
    fetch_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Timeout for the unified mailbox request",
    )
    exclude_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=600,
        description="Timeout for each exclusion folder request",
    )
    health_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for the /health probe",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class StorageConfig(BaseModel):
    """Key-value storage settings."""

    db_path: str = Field(
        default="data/casemail.db",
        description="Path to the SQLite database backing every store",
    )
    raw_store: str = Field(default="RAW_DATA_HEADERS", description="Store for every message")
    matched_store: str = Field(
        default="FILTERED_DATA_HEADERS",
        description="Store for messages matching at least one category",
    )
    state_store: str = Field(
        default="PIPELINE_STATE",
        description="Store for watermark, run summary and health records",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure db path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v

    @field_validator("raw_store", "matched_store", "state_store")
    @classmethod
    def validate_store(cls, v: str) -> str:
        return _validate_store_name(v)


class PipelineConfig(BaseModel):
    """Orchestrator settings."""

    watermark_key: str = Field(
        default="last_fetch_timestamp",
        description="State key holding the newest processed message date",
    )
    summary_key: str = Field(
        default="pipeline_last_run",
        description="State key holding the last run summary",
    )
    health_keys: list[str] = Field(
        default=["hop_bridge"],
        description="State keys holding health reports written by check-health",
    )
    require_health: bool = Field(
        default=True,
        description="Skip the run unless every health key reports 'ok'",
    )
    fetch_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Extra attempts for the unified mailbox fetch",
    )
    retry_delays: list[float] = Field(
        default=[1.0, 2.0, 4.0],
        min_length=1,
        description="Backoff delays (seconds) between fetch attempts",
    )


class TriageConfig(BaseModel):
    """Triage decision table."""

    no_action_signals: list[str] = Field(
        default_factory=lambda: list(DEFAULT_NO_ACTION_SIGNALS),
        description="Phrases in subject or sender that mark a message as needing no action",
    )
    complex_categories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_COMPLEX_CATEGORIES),
        description="Categories that escalate a record to COMPLEX",
    )
    auto_apply: bool = Field(
        default=False,
        description="Apply triage decisions during a pipeline run instead of only listing them",
    )


class RuleConditions(BaseModel):
    """Substring predicates for a category rule (any field, any pattern)."""

    from_includes: list[str] = Field(
        default_factory=list,
        description="Substrings matched against the sender (case-insensitive)",
    )
    to_includes: list[str] = Field(
        default_factory=list,
        description="Substrings matched against the recipient (case-insensitive)",
    )
    subject_includes: list[str] = Field(
        default_factory=list,
        description="Substrings matched against the subject (case-insensitive)",
    )


class CategoryRule(BaseModel):
    """Classification rule routing matching messages to one category store."""

    category: str = Field(description="Destination category (store name)")
    priority: str = Field(default="normal", description="Informational priority label")
    conditions: RuleConditions = Field(default_factory=RuleConditions)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: str) -> str:
        return _validate_store_name(v)

    @model_validator(mode="after")
    def require_patterns(self) -> "CategoryRule":
        """Reject rules with no patterns at all; they could never fire."""
        c = self.conditions
        if not (c.from_includes or c.to_includes or c.subject_includes):
            raise ValueError(f"Rule for '{self.category}' has no conditions")
        return self


class AppConfig(BaseModel):
    """Root configuration schema for casemail.

    If validation fails on startup, the CLI exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    mail_source: MailSourceConfig = Field(default_factory=MailSourceConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)

    categories: list[CategoryRule] = Field(
        default_factory=list,
        description="Ordered classification rules",
    )

    @model_validator(mode="after")
    def check_reserved_stores(self) -> "AppConfig":
        """Category names must not collide with the raw/matched/state stores."""
        reserved = {
            self.storage.raw_store,
            self.storage.matched_store,
            self.storage.state_store,
        }
        if len(reserved) != 3:
            raise ValueError("raw_store, matched_store and state_store must be distinct")
        for rule in self.categories:
            if rule.category in reserved:
                raise ValueError(
                    f"Category '{rule.category}' collides with a reserved store name"
                )
        return self

    def category_names(self) -> list[str]:
        """Distinct category names in rule order."""
        return list(dict.fromkeys(rule.category for rule in self.categories))
