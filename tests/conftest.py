"""Pytest fixtures and configuration for casemail tests.

Provides common fixtures for configuration, storage, messages and mocking.
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from casemail.config import reset_config
from casemail.config_schema import AppConfig
from casemail.db.store import KVDatabase, StoreRegistry
from casemail.mail.models import Message


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

mail_source:
  base_url: "http://mail.test:4000/"

pipeline:
  health_keys: ["hop_bridge"]

categories:
  - category: "EMAIL_COURTS_SUPREME_COURT"
    priority: "high"
    conditions:
      from_includes: ["supremecourt"]
  - category: "EMAIL_COMPLAINTS_ICO"
    conditions:
      from_includes: ["ico.org.uk"]
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a valid config as a dictionary, with the database in data_dir."""
    return {
        "schema_version": 1,
        "mail_source": {"base_url": "http://mail.test:4000"},
        "storage": {"db_path": str(data_dir / "casemail.db")},
        "pipeline": {"health_keys": ["hop_bridge"], "retry_delays": [0.01]},
        "categories": [
            {
                "category": "EMAIL_COURTS_SUPREME_COURT",
                "priority": "high",
                "conditions": {"from_includes": ["supremecourt"]},
            },
            {
                "category": "EMAIL_COMPLAINTS_ICO",
                "conditions": {
                    "from_includes": ["ico.org.uk"],
                    "subject_includes": ["information commissioner"],
                },
            },
            {
                "category": "EMAIL_RECONSIDERATION_CPR52_30",
                "conditions": {"subject_includes": ["cpr 52.30"]},
            },
        ],
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the CASEMAIL_CONFIG_PATH environment variable."""
    old_value = os.environ.get("CASEMAIL_CONFIG_PATH")
    os.environ["CASEMAIL_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["CASEMAIL_CONFIG_PATH"]
    else:
        os.environ["CASEMAIL_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def database(data_dir: Path) -> AsyncGenerator[KVDatabase, None]:
    """Create and initialize a KVDatabase in a temporary directory."""
    db = KVDatabase(data_dir / "test.db")
    await db.initialize()
    yield db


@pytest.fixture
def stores(database: KVDatabase, sample_config: AppConfig) -> StoreRegistry:
    """Resolve every store for the sample config."""
    return StoreRegistry.from_config(database, sample_config)


def make_message(
    sender: str = "someone@example.com",
    subject: str = "Hello",
    date: datetime | None = None,
    message_id: str | None = None,
    to: str = "cases@firm.example",
    body: str = "",
) -> Message:
    """Build a Message with sensible defaults."""
    when = date or datetime(2026, 2, 9, 10, 30, 45, tzinfo=UTC)
    return Message(
        sender=sender,
        to=to,
        subject=subject,
        date=when,
        message_id=message_id or f"<{sender}-{when.isoformat()}-{subject}>",
        body=body,
    )


def wire_email(
    message_id: str,
    date: str = "2026-02-09T10:30:45Z",
    sender: str = "someone@example.com",
    subject: str = "Hello",
    to: str = "cases@firm.example",
) -> dict[str, Any]:
    """Build one /fetch-emails entry."""
    return {
        "from": sender,
        "to": to,
        "subject": subject,
        "date": date,
        "messageId": message_id,
        "body": "",
    }
