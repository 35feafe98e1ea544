"""HTTP client for the mail source backend.

The mail source exposes two endpoints:
- POST /fetch-emails with {"folder": str, "limit"?: int}, answering
  {"emails": [{from, to, subject, date, messageId, body}, ...]}
- GET /health, answering {"status": "ok", ...} when the mailbox is reachable

Every request carries its own timeout. The client never retries: retry
policy belongs to the pipeline orchestrator.

Usage:
    from casemail.mail.client import MailSourceClient

    client = MailSourceClient("http://localhost:4000")
    emails = client.fetch_folder("All Mail", timeout=60.0)
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

import requests

from casemail.core.errors import MailSourceError
from casemail.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FETCH_TIMEOUT = 60.0
DEFAULT_HEALTH_TIMEOUT = 10.0


@dataclass(frozen=True)
class HealthReport:
    """Result of one health probe, persisted as JSON under a health key.

    Attributes:
        status: 'ok' or 'error'
        timestamp: When the probe ran (ISO-8601 UTC)
        detail: Response payload or error message
    """

    status: str
    timestamp: str
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> HealthReport:
        """Decode a stored report. Unknown shapes decode as status 'error'."""
        try:
            data = json.loads(raw)
        except ValueError:
            return cls(status="error", timestamp="", detail={"error": "unreadable health record"})
        if not isinstance(data, dict):
            return cls(status="error", timestamp="", detail={"error": "unreadable health record"})
        detail = data.get("detail")
        return cls(
            status=str(data.get("status", "error")),
            timestamp=str(data.get("timestamp", "")),
            detail=detail if isinstance(detail, dict) else {},
        )


class MailSourceClient:
    """Client for the mail source backend.

    Attributes:
        base_url: Backend base URL without trailing slash
        session: requests session used for connection pooling
    """

    def __init__(self, base_url: str, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

        logger.debug("mail_source_client_initialized", base_url=self.base_url)

    def fetch_folder(
        self,
        folder: str,
        limit: int | None = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> list[dict[str, Any]]:
        """Fetch every message the backend returns for a folder.

        Args:
            folder: Folder name (e.g. "All Mail", "Spam", "Trash")
            limit: Optional cap passed through to the backend
            timeout: Request timeout in seconds

        Returns:
            List of raw email dicts

        Raises:
            MailSourceError: On network errors, timeouts, non-2xx responses,
                or a body that is not the expected JSON shape
        """
        body: dict[str, Any] = {"folder": folder}
        if limit is not None:
            body["limit"] = limit

        url = f"{self.base_url}/fetch-emails"
        logger.debug("mail_source_request", folder=folder, limit=limit, timeout=timeout)

        try:
            response = self.session.post(url, json=body, timeout=timeout)
        except requests.exceptions.Timeout:
            raise MailSourceError(
                f"Fetching folder '{folder}' timed out after {timeout}s. "
                "The mail source may be overloaded or the tunnel down.",
                folder=folder,
            ) from None
        except requests.exceptions.RequestException as e:
            raise MailSourceError(
                f"Could not reach the mail source at {self.base_url}: {e}. "
                "Check that the backend is running and mail_source.base_url is correct.",
                folder=folder,
            ) from e

        if response.status_code >= 400:
            logger.error(
                "mail_source_error_response",
                folder=folder,
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise MailSourceError(
                f"Backend returned {response.status_code} for folder '{folder}'",
                status_code=response.status_code,
                folder=folder,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise MailSourceError(
                f"Backend returned invalid JSON for folder '{folder}'",
                status_code=response.status_code,
                folder=folder,
            ) from e

        emails = data.get("emails") if isinstance(data, dict) else None
        if emails is None:
            emails = []
        if not isinstance(emails, list):
            raise MailSourceError(
                f"Backend response for folder '{folder}' has a non-list 'emails' field",
                status_code=response.status_code,
                folder=folder,
            )

        logger.info("mail_source_folder_fetched", folder=folder, count=len(emails))
        return [e for e in emails if isinstance(e, dict)]

    def check_health(self, timeout: float = DEFAULT_HEALTH_TIMEOUT) -> HealthReport:
        """Probe GET /health.

        Never raises for network or HTTP failures; they are reported as a
        HealthReport with status 'error'.
        """
        now = datetime.now(UTC).isoformat()
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("mail_source_health_unreachable", error=str(e))
            return HealthReport(status="error", timestamp=now, detail={"error": str(e)})

        try:
            payload = response.json()
        except ValueError:
            payload = {"body": response.text[:200]}
        if not isinstance(payload, dict):
            payload = {"body": payload}

        healthy = response.ok and payload.get("status", "ok") == "ok"
        report = HealthReport(
            status="ok" if healthy else "error",
            timestamp=now,
            detail={"http_status": response.status_code, **payload},
        )
        logger.info("mail_source_health_checked", status=report.status)
        return report
