"""
Indexer for storage channel messages.

Classifies one inbound message and applies it to the local index:
directory messages and tagged file captions are upserted, untagged
attachments are imported into a folder derived from their hashtags, and
everything else is skipped.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from config.config_manager import SyncConfig
from core.db_manager import DBManager
from core.error_handler import TransportError, log_event
from core.fsmeta import (
    ROOT_PARENT,
    DirMeta,
    FileMeta,
    MetaError,
    extract_folder_tags,
    make_file_caption_with_tag,
    normalize_name,
    normalize_tag_name,
    parse_dir_message,
    parse_file_caption,
)
from core.transport import StoredMessage, Transport
from logic.directory_manager import DirectoryManager
from models.database import PLACEHOLDER_DIR_NAME, Directory, generate_id, unix_now


logger = logging.getLogger(__name__)


UNASSIGNED_DIR_NAME = "Unsorted"


@dataclass
class IndexOutcome:
    """
    Result of indexing one message.

    ``is_file`` together with ``skipped`` marks an attachment that an earlier
    pass already imported; the message still counts as seen.
    """
    is_dir: bool = False
    is_file: bool = False
    imported: bool = False
    skipped: bool = False
    failed: bool = False


@dataclass
class IndexContext:
    """State shared by the messages of one indexing pass."""
    unassigned_dir: Optional[Directory] = None


def fingerprint_from_seed(seed: str) -> str:
    """First 8 hex chars of SHA-256 over ``seed``. A naming hint, not an integrity check."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:8]


class Indexer:
    """
    Applies storage channel messages to the local index.

    Indexing the same message twice is harmless: directory and file records
    are upserted by id and imports are skipped when a file already points at
    the message.
    """

    def __init__(
        self,
        db_manager: DBManager,
        transport: Transport,
        directories: DirectoryManager,
        storage_chat_id: int,
        sync_config: Optional[SyncConfig] = None
    ):
        """
        Initialize Indexer.

        Args:
            db_manager: DBManager instance for the local index
            transport: Transport for the storage channel
            directories: DirectoryManager used to create import target folders
            storage_chat_id: Chat holding the stored tree
            sync_config: Retry delays for caption updates and existence checks
        """
        self.db = db_manager
        self.transport = transport
        self.directories = directories
        self.storage_chat_id = storage_chat_id
        self.config = sync_config or SyncConfig()

    async def classify_and_apply(
        self,
        message: StoredMessage,
        context: Optional[IndexContext] = None
    ) -> IndexOutcome:
        """
        Classify a message and apply it to the index.

        Args:
            message: Message from history or search
            context: Shared pass state; a fresh one is used if omitted

        Returns:
            IndexOutcome describing what happened

        Raises:
            TransportError: If creating an import target folder failed
        """
        if context is None:
            context = IndexContext()

        if message.text:
            try:
                meta = parse_dir_message(message.text)
            except MetaError:
                meta = None
            if meta is not None:
                self._upsert_dir(meta, message)
                return IndexOutcome(is_dir=True)

        if message.caption:
            try:
                file_meta = parse_file_caption(message.caption)
            except MetaError:
                file_meta = None
            if file_meta is not None:
                self._upsert_file(file_meta, message)
                return IndexOutcome(is_file=True)

        if not message.has_attachment:
            return IndexOutcome(skipped=True)

        # Already imported, possibly with the caption rewrite lost.
        if self.db.get_file_by_location(self.storage_chat_id, message.id) is not None:
            return IndexOutcome(is_file=True, skipped=True)

        if await self._import_untagged(message, context):
            return IndexOutcome(is_file=True, imported=True)
        return IndexOutcome(skipped=True)

    def _message_date(self, message: StoredMessage) -> int:
        return message.date if message.date > 0 else unix_now()

    def _ensure_placeholder(self, dir_id: str, date: int) -> None:
        if not dir_id.strip():
            return
        if self.db.ensure_directory_placeholder(dir_id, PLACEHOLDER_DIR_NAME, date):
            log_event(logger, logging.DEBUG, "storage_sync_dir_placeholder",
                      "Placeholder directory added", dir_id=dir_id)

    def _upsert_dir(self, meta: DirMeta, message: StoredMessage) -> None:
        date = self._message_date(message)
        parent_id: Optional[str] = meta.parent_id.strip()
        if not parent_id or parent_id == ROOT_PARENT:
            parent_id = None
        elif parent_id == meta.dir_id:
            logger.warning(f"Directory {meta.dir_id} names itself as parent, indexing it at the root")
            parent_id = None
        if parent_id is not None:
            self._ensure_placeholder(parent_id, date)
        self.db.upsert_directory(meta.dir_id, parent_id, meta.name, message.id, date)

    def _upsert_file(self, meta: FileMeta, message: StoredMessage) -> None:
        date = self._message_date(message)
        self._ensure_placeholder(meta.dir_id, date)
        self.db.upsert_file(
            file_id=meta.file_id,
            dir_id=meta.dir_id,
            name=meta.name,
            size=message.file_size or 0,
            hash_short=meta.hash_short,
            tg_chat_id=self.storage_chat_id,
            tg_msg_id=message.id,
            created_at=date,
        )

    async def _resolve_import_target(self, caption: str, context: IndexContext) -> Directory:
        preferred: Optional[str] = None
        for tag in extract_folder_tags(caption):
            name = normalize_tag_name(tag)
            if name is None:
                continue
            if preferred is None:
                preferred = name
            found = self.directories.find_by_name(name)
            if found is not None:
                return found

        if preferred is not None:
            return await self.directories.ensure_by_name(preferred)

        if context.unassigned_dir is None:
            context.unassigned_dir = await self.directories.ensure_by_name(UNASSIGNED_DIR_NAME)
        return context.unassigned_dir

    async def _import_untagged(self, message: StoredMessage, context: IndexContext) -> bool:
        """
        Adopt an attachment that was posted without metadata.

        Returns:
            True if a file row was created, False if the message was skipped
        """
        chat_id = self.storage_chat_id
        target = await self._resolve_import_target(message.caption or "", context)

        file_id = generate_id()
        file_name = normalize_name(message.file_name) or f"file_{message.id}"
        size = message.file_size or 0
        hash_short = fingerprint_from_seed(f"{chat_id}:{message.id}:{file_name}:{size}")
        caption = make_file_caption_with_tag(
            FileMeta(dir_id=target.id, file_id=file_id, name=file_name, hash_short=hash_short),
            target.name,
        )

        try:
            await self._edit_caption_with_retry(message.id, caption)
        except TransportError as e:
            log_event(logger, logging.WARNING, "storage_import_edit_failed",
                      "Could not update caption, keeping the original",
                      message_id=message.id, error=str(e))

        if not await self._message_exists_with_retry(message.id):
            log_event(logger, logging.WARNING, "storage_import_message_missing",
                      "Message not found, import skipped", message_id=message.id)
            return False

        try:
            self.db.insert_file(
                file_id=file_id,
                dir_id=target.id,
                name=file_name,
                size=size,
                hash_short=hash_short,
                tg_chat_id=chat_id,
                tg_msg_id=message.id,
                created_at=self._message_date(message),
            )
        except IntegrityError as e:
            log_event(logger, logging.WARNING, "storage_import_db_failed",
                      "Could not store imported file", file_id=file_id, error=str(e))
            return False

        logger.info(f"Imported untagged file '{file_name}' from message {message.id} into '{target.name}'")
        return True

    async def _edit_caption_with_retry(self, message_id: int, caption: str) -> None:
        """Two attempts with a fixed pause; raises with both reasons if both fail."""
        try:
            await self.transport.edit_caption(self.storage_chat_id, message_id, caption)
            return
        except TransportError as first:
            first_error = first
        await asyncio.sleep(self.config.caption_retry_delay)
        try:
            await self.transport.edit_caption(self.storage_chat_id, message_id, caption)
        except TransportError as second:
            raise TransportError(f"{first_error}; {second}")

    async def _message_exists_with_retry(self, message_id: int) -> bool:
        """Poll for the message with increasing delays to ride out propagation lag."""
        delays = self.config.exists_retry_delays
        for idx, delay in enumerate(delays):
            try:
                if await self.transport.exists(self.storage_chat_id, message_id):
                    return True
            except TransportError as e:
                if idx == len(delays) - 1:
                    log_event(logger, logging.DEBUG, "storage_import_message_check_failed",
                              message_id=message_id, error=str(e))
            if idx < len(delays) - 1:
                await asyncio.sleep(delay)
        return False
