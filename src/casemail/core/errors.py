"""Custom exception types for casemail.

Error messages say what failed, where, why, and how to fix it when a fix
is known.
"""


class CasemailError(Exception):
    """Base exception for all casemail errors."""

    pass


class ConfigValidationError(CasemailError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(CasemailError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class MailSourceError(CasemailError):
    """Raised when the mail source is unreachable or answers with an error.

    Attributes:
        status_code: HTTP status code from the mail source (None for
            network errors and timeouts)
        folder: Folder that was being fetched, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        folder: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.folder = folder


class StorageError(CasemailError):
    """Raised when a key-value store operation fails.

    Attributes:
        store: Name of the store (namespace) the operation targeted
        key: Record key, if the operation addressed a single record
    """

    def __init__(self, message: str, store: str | None = None, key: str | None = None):
        super().__init__(message)
        self.store = store
        self.key = key


class RecordFormatError(CasemailError):
    """Raised when a persisted record cannot be decoded.

    Non-fatal during triage scans: the record is logged and skipped.

    Attributes:
        key: Key of the record that failed to parse
    """

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key
