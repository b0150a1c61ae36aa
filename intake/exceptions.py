"""Error taxonomy for the intake pipeline.

ValidationError is user-facing and scoped to a file or a row depending on
the stage it is raised in. ExternalServiceError is recovered locally by
callers (best-effort enrichment). PersistenceError is fatal to a batch.
IngestionError wraps whatever failed a batch and names the stage.
"""
from __future__ import annotations


class IntakeError(Exception):
    """Base class for all intake errors."""
    pass


class ValidationError(IntakeError):
    """Malformed file, invalid identifier or missing required field."""
    pass


class BinaryFileError(ValidationError):
    """Raised when an upload looks like a binary (non-text) file."""
    pass


class ParseError(ValidationError):
    """Raised when tabular parsing fails."""
    pass


class RowValidationError(ValidationError):
    """Raised when a single row cannot become a vehicle record."""

    def __init__(self, message: str, *, row_number: int | None = None, field: str | None = None):
        super().__init__(message)
        self.row_number = row_number
        self.field = field


class InvalidIdentifierError(ValidationError):
    """Raised when a VIN fails format validation."""

    def __init__(self, vin: str):
        super().__init__(f"Invalid VIN format: {vin!r}")
        self.vin = vin


class NotFoundError(IntakeError):
    """Raised when a referenced auction or runlist does not exist."""
    pass


class ExternalServiceError(IntakeError):
    """An external dependency is unreachable or erroring."""
    pass


class RegistryError(ExternalServiceError):
    """Raised when the vehicle registry call fails."""
    pass


class PersistenceError(IntakeError):
    """Raised when writing or reading batch data fails."""
    pass


class IngestionError(IntakeError):
    """Raised when a batch fails as a whole.

    Attributes:
        stage: Pipeline stage that failed (upload, parse, map, persist, match)
        runlist_id: Runlist the failure was recorded on, if any
    """

    def __init__(self, stage: str, cause: Exception, *, runlist_id: int | None = None):
        super().__init__(f"Ingestion failed at {stage}: {cause}")
        self.stage = stage
        self.cause = cause
        self.runlist_id = runlist_id
