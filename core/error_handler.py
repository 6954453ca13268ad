"""
Error taxonomy and structured event logging for msgdrive.

Errors are categorized so callers can tell user-correctable problems
(validation, not-found) from transport failures and fatal store failures.
Outcomes such as "skipped" or "needs source file" are plain values and never
modeled here.
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    STORAGE = "storage"
    UNKNOWN = "unknown"


# Custom Exception Classes

class DriveError(Exception):
    """Base exception for msgdrive errors."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class ValidationError(DriveError):
    """User-correctable input error. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.VALIDATION)


class DirectoryNotEmptyError(ValidationError):
    """Directory still holds files or subdirectories."""

    def __init__(self, dir_id: str, file_count: int, dir_count: int):
        super().__init__(
            f"Directory is not empty: files={file_count}, subdirectories={dir_count}"
        )
        self.dir_id = dir_id
        self.file_count = file_count
        self.dir_count = dir_count


class NotFoundError(DriveError):
    """Referenced id is absent from the local index."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.NOT_FOUND)


class TransportError(DriveError):
    """Messaging transport call failed."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.TRANSPORT)


class FallbackExhaustedError(TransportError):
    """
    Every step of a fallback chain failed.

    The message carries the reason of each attempted step so the user sees
    the net effect of the whole chain.
    """

    def __init__(self, operation: str, attempts: List[Tuple[str, str]], final: Optional[str] = None):
        details = "; ".join(f"{step}: {reason}" for step, reason in attempts)
        message = f"{operation} failed"
        if final:
            message = f"{message}: {final}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)
        self.operation = operation
        self.attempts = list(attempts)


def categorize_error(error: Exception) -> ErrorCategory:
    """Categorize an arbitrary exception."""
    if isinstance(error, DriveError):
        return error.category

    error_type = type(error).__name__.lower()
    if any(keyword in error_type for keyword in ('sqlalchemy', 'integrity', 'operational', 'database')):
        return ErrorCategory.STORAGE
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSPORT
    return ErrorCategory.UNKNOWN


def log_event(log: logging.Logger, level: int, event: str, message: str = "", **fields) -> None:
    """
    Emit a structured log record.

    The event name and fields are rendered into the message and attached to
    the record as ``extra`` so handlers can serialize them.

    Example:
        log_event(logger, logging.WARNING, "file_delete_message_failed",
                  "Remote delete failed", file_id=file_id, error=str(e))
    """
    rendered = " ".join(f"{key}={value}" for key, value in fields.items())
    text = event
    if rendered:
        text = f"{text} {rendered}"
    if message:
        text = f"{text}: {message}"
    log.log(level, text, extra={"event": event, "fields": fields})
