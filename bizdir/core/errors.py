"""Exception types shared across the ingestion and query layers."""

from typing import Dict, List, Optional


class BizdirError(RuntimeError):
    """Base class for errors raised by the directory core."""


class ConfigError(BizdirError):
    """Raised when mandatory configuration is missing."""


class StoreError(BizdirError):
    """Raised when the document store cannot complete an operation."""


class SourceFetchError(BizdirError):
    """Raised when an external data source cannot be fetched or parsed."""


class NormalizationError(BizdirError):
    """Raised when a raw record cannot be mapped to a Business."""


class BatchCommitError(BizdirError):
    """Raised when batch commits failed after exhausting retries."""

    def __init__(self, message: str, failed: int = 0, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.failed = failed
        self.errors = list(errors or [])


class SyncInProgressError(BizdirError):
    """Raised when a sync is requested while another one is running."""


class ValidationError(BizdirError):
    """Raised for invalid caller input; carries field-level detail."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

    @property
    def details(self) -> List[Dict[str, str]]:
        return [{"field": self.field, "message": self.message}]
