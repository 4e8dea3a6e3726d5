"""Error taxonomy for the change-detection and reindexing pipeline."""
from typing import Optional


class PipelineError(Exception):
    """Base class for errors surfaced by the pipeline.

    ``status_code`` is the HTTP status the API layer renders for the error.
    """

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PipelineError):
    """Missing or invalid request input."""
    status_code = 400


class UnsupportedModeError(ValidationError):
    """Watch mode that is named in configuration but not implemented."""


class NotFoundError(PipelineError):
    """Unknown file id, or a path that matches no tracked file."""
    status_code = 404


class StoreError(PipelineError):
    """Failure reported by the underlying store."""
    status_code = 500


class StoreUnavailable(StoreError):
    """The store cannot be reached at all (preflight failure)."""
    status_code = 503


class SourceReadError(PipelineError):
    """A tracked file's source is missing or unreadable at scan time."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, status_code=404)
        self.path = path


class ProcessingError(PipelineError):
    """Chunking or the multi-step chunk replacement failed for one file."""

    def __init__(self, message: str, file_id: Optional[str] = None):
        super().__init__(message)
        self.file_id = file_id
