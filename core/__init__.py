"""
Core module for msgdrive.

This module contains the core functionality including:
- Metadata codec for directory messages and file captions
- Transport interface and the in-memory transport
- Database operations on the local index
- Message indexing and synchronization
- Download cache resolution
"""

__version__ = "0.1.0"

from core.error_handler import (
    DirectoryNotEmptyError,
    DriveError,
    ErrorCategory,
    FallbackExhaustedError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from core.transport import MessageBatch, StoredMessage, Transport, UploadedMessage

__all__ = [
    'DirectoryNotEmptyError',
    'DriveError',
    'ErrorCategory',
    'FallbackExhaustedError',
    'NotFoundError',
    'TransportError',
    'ValidationError',
    'MessageBatch',
    'StoredMessage',
    'Transport',
    'UploadedMessage',
]
