"""
In-memory transport.

Behaves like a single-account messaging backend: chats hold messages with
globally increasing ids, history and search are served newest first in pages.
Failures can be injected per operation and messages can be edited or removed
"externally" to simulate tampering outside the application.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from core.error_handler import TransportError
from core.transport import MessageBatch, StoredMessage, Transport, UploadedMessage


logger = logging.getLogger(__name__)


@dataclass
class _Record:
    id: int
    date: int
    text: Optional[str] = None
    caption: Optional[str] = None
    content: Optional[bytes] = None
    file_name: Optional[str] = None

    def to_message(self) -> StoredMessage:
        return StoredMessage(
            id=self.id,
            date=self.date,
            text=self.text,
            caption=self.caption,
            file_size=len(self.content) if self.content is not None else None,
            file_name=self.file_name,
        )


class InMemoryTransport(Transport):
    """Transport fake keeping every chat in memory."""

    def __init__(self, first_message_id: int = 1):
        self._chats: Dict[int, Dict[int, _Record]] = {}
        self._next_id = first_message_id
        self._failures: Dict[str, List] = {}
        self.duplicate_returns_none = False
        self.calls: List[Tuple[str, tuple]] = []

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def fail(self, operation: str, times: Optional[int] = None, message: str = "injected failure") -> None:
        """
        Make the next calls of ``operation`` raise TransportError.

        Args:
            operation: Transport method name, e.g. "edit_caption"
            times: Number of failing calls; None fails until ``clear_failures``
            message: Error text
        """
        self._failures[operation] = [times, message]

    def clear_failures(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def inject_message(
        self,
        chat_id: int,
        text: Optional[str] = None,
        caption: Optional[str] = None,
        content: Optional[bytes] = None,
        file_name: Optional[str] = None,
    ) -> int:
        """Post a message as if it had been sent by another client."""
        return self._store(chat_id, text=text, caption=caption, content=content, file_name=file_name).id

    def remove_message(self, chat_id: int, message_id: int) -> None:
        """Delete a message behind the application's back."""
        self._chats.get(chat_id, {}).pop(message_id, None)

    def set_caption(self, chat_id: int, message_id: int, caption: Optional[str]) -> None:
        """Edit a caption behind the application's back."""
        self._record(chat_id, message_id).caption = caption

    def get_message(self, chat_id: int, message_id: int) -> Optional[StoredMessage]:
        record = self._chats.get(chat_id, {}).get(message_id)
        return record.to_message() if record else None

    def message_ids(self, chat_id: int) -> List[int]:
        return sorted(self._chats.get(chat_id, {}))

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        failure = self._failures.get(operation)
        if not failure:
            return
        remaining, message = failure
        if remaining is not None:
            if remaining <= 0:
                self._failures.pop(operation, None)
                return
            failure[0] = remaining - 1
        logger.debug(f"Injected failure for {operation}")
        raise TransportError(message)

    def _store(self, chat_id: int, **fields) -> _Record:
        record = _Record(id=self._next_id, date=int(time.time()), **fields)
        self._next_id += 1
        self._chats.setdefault(chat_id, {})[record.id] = record
        return record

    def _record(self, chat_id: int, message_id: int) -> _Record:
        record = self._chats.get(chat_id, {}).get(message_id)
        if record is None:
            raise TransportError(f"message {message_id} not found in chat {chat_id}")
        return record

    def _page(self, records: List[_Record], from_message_id: int, limit: int) -> MessageBatch:
        ordered = sorted(records, key=lambda r: r.id, reverse=True)
        if from_message_id:
            ordered = [r for r in ordered if r.id < from_message_id]
        limit = max(1, limit)
        page = ordered[:limit]
        next_from = page[-1].id if len(ordered) > limit else 0
        return MessageBatch(messages=[r.to_message() for r in page], next_from_message_id=next_from)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def publish_text(self, chat_id: int, text: str) -> UploadedMessage:
        self._enter("publish_text", chat_id, text)
        record = self._store(chat_id, text=text)
        return UploadedMessage(chat_id=chat_id, message_id=record.id, caption_or_text=text)

    async def publish_file(self, chat_id: int, path: Path, caption: str) -> UploadedMessage:
        self._enter("publish_file", chat_id, path, caption)
        try:
            content = Path(path).read_bytes()
        except OSError as e:
            raise TransportError(f"cannot read {path}: {e}")
        record = self._store(chat_id, caption=caption, content=content, file_name=Path(path).name)
        return UploadedMessage(chat_id=chat_id, message_id=record.id, caption_or_text=caption)

    async def edit_text(self, chat_id: int, message_id: int, text: str) -> None:
        self._enter("edit_text", chat_id, message_id, text)
        record = self._record(chat_id, message_id)
        if record.content is not None:
            raise TransportError(f"message {message_id} has no text")
        record.text = text

    async def edit_caption(self, chat_id: int, message_id: int, caption: str) -> None:
        self._enter("edit_caption", chat_id, message_id, caption)
        record = self._record(chat_id, message_id)
        if record.content is None:
            raise TransportError(f"message {message_id} has no attachment")
        record.caption = caption

    async def resend_as_new(self, chat_id: int, message_id: int, caption: str) -> UploadedMessage:
        self._enter("resend_as_new", chat_id, message_id, caption)
        source = self._record(chat_id, message_id)
        if source.content is None:
            raise TransportError(f"message {message_id} has no attachment")
        record = self._store(chat_id, caption=caption, content=source.content, file_name=source.file_name)
        return UploadedMessage(chat_id=chat_id, message_id=record.id, caption_or_text=caption)

    async def duplicate(self, chat_id: int, message_id: int) -> Optional[int]:
        self._enter("duplicate", chat_id, message_id)
        source = self._record(chat_id, message_id)
        if self.duplicate_returns_none:
            return None
        record = self._store(
            chat_id,
            text=source.text,
            caption=source.caption,
            content=source.content,
            file_name=source.file_name,
        )
        return record.id

    async def delete(self, chat_id: int, message_ids: List[int], revoke: bool = True) -> None:
        self._enter("delete", chat_id, list(message_ids), revoke)
        chat = self._chats.get(chat_id, {})
        for message_id in message_ids:
            chat.pop(message_id, None)

    async def forward(self, from_chat_id: int, to_chat_id: int, message_id: int) -> int:
        self._enter("forward", from_chat_id, to_chat_id, message_id)
        source = self._record(from_chat_id, message_id)
        record = self._store(
            to_chat_id,
            text=source.text,
            caption=source.caption,
            content=source.content,
            file_name=source.file_name,
        )
        return record.id

    async def search(self, chat_id: int, query: str, from_message_id: int = 0, limit: int = 100) -> MessageBatch:
        self._enter("search", chat_id, query, from_message_id, limit)
        matches = [
            r for r in self._chats.get(chat_id, {}).values()
            if query in (r.text or "") or query in (r.caption or "")
        ]
        return self._page(matches, from_message_id, limit)

    async def fetch_history(self, chat_id: int, from_message_id: int = 0, limit: int = 100) -> MessageBatch:
        self._enter("fetch_history", chat_id, from_message_id, limit)
        return self._page(list(self._chats.get(chat_id, {}).values()), from_message_id, limit)

    async def exists(self, chat_id: int, message_id: int) -> bool:
        self._enter("exists", chat_id, message_id)
        return message_id in self._chats.get(chat_id, {})

    async def download(self, chat_id: int, message_id: int, target: Path) -> Path:
        self._enter("download", chat_id, message_id, target)
        record = self._record(chat_id, message_id)
        if record.content is None:
            raise TransportError(f"message {message_id} has no attachment")
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(record.content)
        return target
