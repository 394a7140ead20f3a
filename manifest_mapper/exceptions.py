"""
Exception hierarchy for Manifest Mapper.

Only ingestion failures are fatal to a batch.  Every other error is caught
by the pipeline and recorded as the status of the stage that raised it.
"""

from __future__ import annotations

from typing import List, Optional


class ManifestMapperError(Exception):
    """Base class for all engine errors."""


class IngestionError(ManifestMapperError):
    """Malformed source data or a failed raw capture."""


class NotFoundError(ManifestMapperError):
    """A raw row, batch or record does not exist."""


class InvalidTransitionError(ManifestMapperError):
    """The requested command is not allowed in the batch's current state."""


class InferenceUnavailableError(ManifestMapperError):
    """The inference capability could not produce candidates."""


class PersistenceError(ManifestMapperError):
    """A single row could not be written to the canonical store."""


class MappingValidationError(ManifestMapperError):
    """An operator-supplied mapping failed validation."""

    def __init__(self, errors: List[str], message: Optional[str] = None) -> None:
        self.errors = list(errors)
        super().__init__(message or "; ".join(self.errors))
