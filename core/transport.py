"""
Transport capability for the storage channel.

The core talks to the messaging platform only through the abstract
``Transport`` interface. The production implementation wraps the platform's
native client and lives outside this package; ``InMemoryTransport`` in
``core.memory_transport`` is the fake used by tests.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, List, Optional, TypeVar

from core.error_handler import TransportError


T = TypeVar("T")


@dataclass
class StoredMessage:
    """A message as returned by history and search calls."""
    id: int
    date: int = 0
    text: Optional[str] = None
    caption: Optional[str] = None
    file_size: Optional[int] = None
    file_name: Optional[str] = None

    @property
    def has_attachment(self) -> bool:
        if self.file_size is not None:
            return True
        return bool(self.file_name and self.file_name.strip())


@dataclass
class UploadedMessage:
    """Location of a freshly published message."""
    chat_id: int
    message_id: int
    caption_or_text: str = ""


@dataclass
class MessageBatch:
    """
    One page of messages, newest first.

    ``next_from_message_id`` of 0 means there are no further pages.
    """
    messages: List[StoredMessage] = field(default_factory=list)
    next_from_message_id: int = 0


class Transport(ABC):
    """
    Abstract messaging transport.

    All methods raise TransportError on failure.
    """

    @abstractmethod
    async def publish_text(self, chat_id: int, text: str) -> UploadedMessage:
        ...

    @abstractmethod
    async def publish_file(self, chat_id: int, path: Path, caption: str) -> UploadedMessage:
        ...

    @abstractmethod
    async def edit_text(self, chat_id: int, message_id: int, text: str) -> None:
        ...

    @abstractmethod
    async def edit_caption(self, chat_id: int, message_id: int, caption: str) -> None:
        ...

    @abstractmethod
    async def resend_as_new(self, chat_id: int, message_id: int, caption: str) -> UploadedMessage:
        """Send the attachment of an existing message again under a new caption."""
        ...

    @abstractmethod
    async def duplicate(self, chat_id: int, message_id: int) -> Optional[int]:
        """Copy a message within its chat. Returns None if the platform refused silently."""
        ...

    @abstractmethod
    async def delete(self, chat_id: int, message_ids: List[int], revoke: bool = True) -> None:
        ...

    @abstractmethod
    async def forward(self, from_chat_id: int, to_chat_id: int, message_id: int) -> int:
        ...

    @abstractmethod
    async def search(self, chat_id: int, query: str, from_message_id: int = 0, limit: int = 100) -> MessageBatch:
        ...

    @abstractmethod
    async def fetch_history(self, chat_id: int, from_message_id: int = 0, limit: int = 100) -> MessageBatch:
        ...

    @abstractmethod
    async def exists(self, chat_id: int, message_id: int) -> bool:
        ...

    @abstractmethod
    async def download(self, chat_id: int, message_id: int, target: Path) -> Path:
        ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """
    Await a transport call with a per-call timeout.

    Raises:
        TransportError: If the call does not finish in time
    """
    if not timeout:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise TransportError(f"transport call timed out after {timeout}s")


class TimeoutTransport(Transport):
    """Wraps another transport and bounds every call with the same timeout."""

    def __init__(self, inner: Transport, timeout: float):
        self.inner = inner
        self.timeout = timeout

    async def publish_text(self, chat_id: int, text: str) -> UploadedMessage:
        return await call_with_timeout(self.inner.publish_text(chat_id, text), self.timeout)

    async def publish_file(self, chat_id: int, path: Path, caption: str) -> UploadedMessage:
        return await call_with_timeout(self.inner.publish_file(chat_id, path, caption), self.timeout)

    async def edit_text(self, chat_id: int, message_id: int, text: str) -> None:
        await call_with_timeout(self.inner.edit_text(chat_id, message_id, text), self.timeout)

    async def edit_caption(self, chat_id: int, message_id: int, caption: str) -> None:
        await call_with_timeout(self.inner.edit_caption(chat_id, message_id, caption), self.timeout)

    async def resend_as_new(self, chat_id: int, message_id: int, caption: str) -> UploadedMessage:
        return await call_with_timeout(self.inner.resend_as_new(chat_id, message_id, caption), self.timeout)

    async def duplicate(self, chat_id: int, message_id: int) -> Optional[int]:
        return await call_with_timeout(self.inner.duplicate(chat_id, message_id), self.timeout)

    async def delete(self, chat_id: int, message_ids: List[int], revoke: bool = True) -> None:
        await call_with_timeout(self.inner.delete(chat_id, message_ids, revoke), self.timeout)

    async def forward(self, from_chat_id: int, to_chat_id: int, message_id: int) -> int:
        return await call_with_timeout(self.inner.forward(from_chat_id, to_chat_id, message_id), self.timeout)

    async def search(self, chat_id: int, query: str, from_message_id: int = 0, limit: int = 100) -> MessageBatch:
        return await call_with_timeout(self.inner.search(chat_id, query, from_message_id, limit), self.timeout)

    async def fetch_history(self, chat_id: int, from_message_id: int = 0, limit: int = 100) -> MessageBatch:
        return await call_with_timeout(self.inner.fetch_history(chat_id, from_message_id, limit), self.timeout)

    async def exists(self, chat_id: int, message_id: int) -> bool:
        return await call_with_timeout(self.inner.exists(chat_id, message_id), self.timeout)

    # Downloads are bounded by size, not by the per-call timeout.
    async def download(self, chat_id: int, message_id: int, target: Path) -> Path:
        return await self.inner.download(chat_id, message_id, target)
