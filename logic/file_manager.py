"""
File Manager for msgdrive

Handles file operations including:
- Uploading local files as captioned attachments in the storage channel
- Moving files between directories with an ordered fallback chain
- Deleting files remotely, from the download cache and from the index
- Repairing files whose backing message went missing
- Downloading into the cache and listing/searching the index
"""

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from config.config_manager import SyncConfig
from core.db_manager import DBManager
from core.download_cache import ContentCache
from core.error_handler import (
    FallbackExhaustedError,
    NotFoundError,
    TransportError,
    ValidationError,
    log_event,
)
from core.fallback import FallbackStep, StepSkipped, run_fallback_chain
from core.fsmeta import (
    ROOT_PARENT,
    FileMeta,
    MetaError,
    make_file_caption_with_tag,
    normalize_name,
    parse_file_caption,
)
from core.transport import Transport
from models.database import PLACEHOLDER_DIR_NAME, File, generate_id, unix_now


logger = logging.getLogger(__name__)


# Constants
CHUNK_SIZE = 64 * 1024  # 64 KB read chunks for hashing
SEARCH_PAGE_SIZE = 100
DEFAULT_SEARCH_LIMIT = 500


class RepairResult(Enum):
    """Outcome of a file repair. Needing a source file is not an error."""
    REPAIRED = "repaired"
    NEEDS_SOURCE = "needs_source"


@dataclass
class FileItem:
    """A file row enriched with the state of its cached copy."""
    id: str
    dir_id: str
    name: str
    size: int
    local_size: Optional[int]
    is_downloaded: bool
    hash: str
    tg_chat_id: int
    tg_msg_id: int
    created_at: int
    is_broken: bool


def compute_hash_short(path: Path) -> str:
    """
    Compute the 8 hex char fingerprint of a file's content.

    Args:
        path: File to read

    Returns:
        First 8 hex chars of the SHA-256 digest
    """
    sha256 = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            sha256.update(chunk)
    return sha256.hexdigest()[:8]


class FileManager:
    """
    Manages file operations against the index, the storage channel and the
    download cache.

    Responsibilities:
    - Upload files and record them in the index
    - Keep captions in step with the owning directory on move
    - Re-resolve backing messages by searching for the file id tag
    - Delete and repair files
    - Serve downloads through the content cache
    """

    def __init__(
        self,
        db_manager: DBManager,
        transport: Transport,
        cache: ContentCache,
        storage_chat_id: int,
        sync_config: Optional[SyncConfig] = None
    ):
        """
        Initialize FileManager.

        Args:
            db_manager: DBManager instance for the local index
            transport: Transport for the storage channel
            cache: ContentCache resolving downloaded copies
            storage_chat_id: Chat holding the stored tree
            sync_config: Paging limits for message searches
        """
        self.db = db_manager
        self.transport = transport
        self.cache = cache
        self.storage_chat_id = storage_chat_id
        self.config = sync_config or SyncConfig()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def upload(self, dir_id: str, local_path: Path) -> str:
        """
        Upload a local file into a directory.

        Args:
            dir_id: Target directory id
            local_path: Regular file to upload

        Returns:
            The new file id

        Raises:
            NotFoundError: If the directory does not exist
            ValidationError: If the path is not a regular file
            TransportError: If publishing failed; nothing is indexed then
        """
        if not self.db.directory_exists(dir_id):
            raise NotFoundError("Directory not found")
        local_path = Path(local_path)
        if not local_path.is_file():
            raise ValidationError(f"Not a regular file: {local_path}")

        file_name = normalize_name(local_path.name) or "file"
        size = local_path.stat().st_size
        hash_short = compute_hash_short(local_path)
        file_id = generate_id()

        caption = self._caption(dir_id, file_id, file_name, hash_short)
        uploaded = await self.transport.publish_file(self.storage_chat_id, local_path, caption)

        self.db.upsert_file(
            file_id=file_id,
            dir_id=dir_id,
            name=file_name,
            size=size,
            hash_short=hash_short,
            tg_chat_id=uploaded.chat_id,
            tg_msg_id=uploaded.message_id,
            created_at=unix_now(),
        )
        logger.info(f"Uploaded '{file_name}' ({size} bytes) as {file_id}")
        return file_id

    async def move(self, file_id: str, new_dir_id: str) -> None:
        """
        Move a file into another directory.

        The caption must follow the file, so the remote side is updated first
        by trying, in order: an in-place caption edit, an edit of the message
        found by searching for the file id, a resend under the new caption,
        and a duplicate whose caption is then edited.

        Raises:
            NotFoundError: If the file or the directory does not exist
            FallbackExhaustedError: If every step failed; the message lists
                each step's reason
        """
        if not self.db.directory_exists(new_dir_id):
            raise NotFoundError("Directory not found")
        file = self._fetch(file_id)
        if file.dir_id == new_dir_id:
            return

        caption = self._caption(new_dir_id, file.id, file.name, file.hash)
        location = {"chat_id": file.tg_chat_id, "message_id": file.tg_msg_id}

        async def edit_in_place() -> Tuple[int, int]:
            await self.transport.edit_caption(location["chat_id"], location["message_id"], caption)
            return location["chat_id"], location["message_id"]

        async def edit_found_message() -> Tuple[int, int]:
            found = await self.find_file_message(file.id, location["chat_id"])
            if found is None:
                raise StepSkipped("no message found by search")
            if found != (location["chat_id"], location["message_id"]):
                location["chat_id"], location["message_id"] = found
                self.db.update_file(file.id, tg_chat_id=found[0], tg_msg_id=found[1], is_broken=False)
            await self.transport.edit_caption(found[0], found[1], caption)
            return found

        async def resend() -> Tuple[int, int]:
            chat_id, message_id = location["chat_id"], location["message_id"]
            uploaded = await self.transport.resend_as_new(chat_id, message_id, caption)
            await self._delete_quietly(chat_id, [message_id], file.id)
            return uploaded.chat_id, uploaded.message_id

        async def duplicate_and_edit() -> Tuple[int, int]:
            chat_id, message_id = location["chat_id"], location["message_id"]
            new_message_id = await self.transport.duplicate(chat_id, message_id)
            if new_message_id is None:
                raise TransportError(
                    "duplicate returned no message id, content protection may be enabled in the channel"
                )
            try:
                await self.transport.edit_caption(chat_id, new_message_id, caption)
            except TransportError as e:
                log_event(logger, logging.WARNING, "file_caption_update_failed",
                          "Caption edit failed on the duplicate", file_id=file.id, error=str(e))
                await self._delete_quietly(chat_id, [new_message_id], file.id)
                raise TransportError(f"caption update failed after duplicating: {e}")
            await self._delete_quietly(chat_id, [message_id], file.id)
            return chat_id, new_message_id

        chat_id, message_id = await run_fallback_chain(
            "file_move",
            [
                FallbackStep("edit caption", edit_in_place),
                FallbackStep("edit found message", edit_found_message),
                FallbackStep("resend", resend),
                FallbackStep("duplicate", duplicate_and_edit, terminal=True),
            ],
            entity_id=file.id,
        )
        self.db.update_file(
            file.id,
            dir_id=new_dir_id,
            tg_chat_id=chat_id,
            tg_msg_id=message_id,
            is_broken=False,
        )
        logger.info(f"Moved file {file.id} to directory {new_dir_id}")

    async def delete(self, file_id: str) -> None:
        """
        Delete a file.

        Remote and cache removal are best-effort; the row is always removed.

        Raises:
            NotFoundError: If the file does not exist
        """
        file = self._fetch(file_id)
        try:
            await self.transport.delete(file.tg_chat_id, [file.tg_msg_id], revoke=True)
        except TransportError as e:
            log_event(logger, logging.WARNING, "file_delete_message_failed",
                      "Remote delete failed", file_id=file.id, error=str(e))
        self._remove_cached(file)
        self.db.delete_file(file.id)
        logger.info(f"Deleted file {file.id}")

    async def delete_many(self, file_ids: List[str]) -> int:
        """
        Delete several files with one remote delete per chat.

        Unknown ids are ignored.

        Returns:
            Number of rows removed
        """
        files: List[File] = []
        grouped: Dict[int, List[int]] = {}
        for file_id in file_ids:
            file = self.db.get_file(file_id)
            if file is None:
                continue
            files.append(file)
            grouped.setdefault(file.tg_chat_id, []).append(file.tg_msg_id)

        for chat_id, message_ids in grouped.items():
            try:
                await self.transport.delete(chat_id, message_ids, revoke=True)
            except TransportError as e:
                log_event(logger, logging.WARNING, "file_delete_many_message_failed",
                          "Remote delete failed", chat_id=chat_id, count=len(message_ids), error=str(e))

        for file in files:
            self._remove_cached(file)
            self.db.delete_file(file.id)

        if files:
            logger.info(f"Deleted {len(files)} files")
        return len(files)

    async def repair(self, file_id: str, local_source: Optional[Path] = None) -> RepairResult:
        """
        Restore the backing message of a file.

        Tries an in-place caption edit, then an edit of the message found by
        searching for the file id. Failing both, publishes ``local_source`` or
        the cached copy of the file.

        Returns:
            RepairResult.REPAIRED, or RepairResult.NEEDS_SOURCE when no
            source file is available

        Raises:
            NotFoundError: If the file does not exist
            ValidationError: If ``local_source`` is not a regular file
            TransportError: If publishing the source failed
        """
        file = self._fetch(file_id)
        caption = self._caption(file.dir_id, file.id, file.name, file.hash)

        async def edit_in_place() -> Tuple[int, int]:
            await self.transport.edit_caption(file.tg_chat_id, file.tg_msg_id, caption)
            return file.tg_chat_id, file.tg_msg_id

        async def edit_found_message() -> Tuple[int, int]:
            found = await self.find_file_message(file.id, file.tg_chat_id)
            if found is None:
                raise StepSkipped("no message found by search")
            await self.transport.edit_caption(found[0], found[1], caption)
            return found

        try:
            chat_id, message_id = await run_fallback_chain(
                "file_repair",
                [
                    FallbackStep("edit caption", edit_in_place),
                    FallbackStep("edit found message", edit_found_message),
                ],
                entity_id=file.id,
            )
        except FallbackExhaustedError:
            source = Path(local_source) if local_source is not None else self.cache.find_for_file(
                file.dir_id, file.name, file.size
            )
            if source is None:
                log_event(logger, logging.INFO, "file_repair_needs_source", file_id=file.id)
                return RepairResult.NEEDS_SOURCE
            if not source.is_file():
                raise ValidationError(f"Not a regular file: {source}")
            uploaded = await self.transport.publish_file(self.storage_chat_id, source, caption)
            chat_id, message_id = uploaded.chat_id, uploaded.message_id

        self.db.update_file(file.id, tg_chat_id=chat_id, tg_msg_id=message_id, is_broken=False)
        logger.info(f"Repaired file {file.id} (message {message_id})")
        return RepairResult.REPAIRED

    # ------------------------------------------------------------------
    # Downloads and queries
    # ------------------------------------------------------------------

    async def download(self, file_id: str, overwrite: bool = False) -> Path:
        """
        Download a file into the cache.

        An existing cached copy is returned unless ``overwrite`` is set. When
        the recorded message cannot be downloaded, the message is looked up
        by the file id and the download retried once.

        Returns:
            Path of the downloaded copy

        Raises:
            NotFoundError: If the file does not exist
            TransportError: If the retried download failed too
        """
        file = self._fetch(file_id)
        dir_path = self.cache.dir_path(file.dir_id)
        base_dir = self.cache.base_dir(dir_path)
        base_dir.mkdir(parents=True, exist_ok=True)

        existing = self.cache.find(dir_path, file.name, file.size)
        if existing is not None and not overwrite:
            return existing

        if overwrite:
            target = existing or self.cache.preferred_target(base_dir, file.name)
            if target.exists():
                target.unlink()
        else:
            target = self.cache.resolve_target(base_dir, file.name, file.size)

        chat_id, message_id = file.tg_chat_id, file.tg_msg_id
        try:
            path = await self.transport.download(chat_id, message_id, target)
        except TransportError as e:
            log_event(logger, logging.WARNING, "file_download_failed",
                      "Retrying with the message found by search", file_id=file.id, error=str(e))
            found = await self.find_file_message(file.id, chat_id)
            if found is not None and found != (chat_id, message_id):
                chat_id, message_id = found
                self.db.update_file(file.id, tg_chat_id=chat_id, tg_msg_id=message_id, is_broken=False)
            path = await self.transport.download(chat_id, message_id, target)

        self._update_size_from_local(file.id, Path(path))
        return Path(path)

    def list_files(self, dir_id: str) -> List[FileItem]:
        """List the files of a directory with their cache state."""
        dir_path = self.cache.dir_path(dir_id)
        return [self._to_item(file, dir_path) for file in self.db.get_files_for_directory(dir_id)]

    def search(
        self,
        dir_id: Optional[str] = None,
        name: Optional[str] = None,
        file_type: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[FileItem]:
        """
        Search the index.

        Args:
            dir_id: Restrict to one directory (blank or "ROOT" means everywhere)
            name: Case-insensitive name substring
            file_type: Extension, with or without leading dots
            limit: Maximum results, 500 by default
        """
        if dir_id is not None and (not dir_id.strip() or dir_id == ROOT_PARENT):
            dir_id = None
        name = (name or "").strip() or None
        extension = (file_type or "").strip().lstrip(".").strip() or None

        files = self.db.search_files(
            dir_id=dir_id,
            name=name,
            extension=extension,
            limit=limit if limit is not None else DEFAULT_SEARCH_LIMIT,
        )
        dir_paths: Dict[str, Path] = {}
        items = []
        for file in files:
            if file.dir_id not in dir_paths:
                dir_paths[file.dir_id] = self.cache.dir_path(file.dir_id)
            items.append(self._to_item(file, dir_paths[file.dir_id]))
        return items

    def find_local_copy(self, file_id: str) -> Optional[Path]:
        """Return the cached copy of a file, if one exists."""
        file = self._fetch(file_id)
        return self.cache.find_for_file(file.dir_id, file.name, file.size)

    async def find_file_message(self, file_id: str, msg_chat_id: int) -> Optional[Tuple[int, int]]:
        """
        Locate the message carrying a file by searching for its id tag.

        Searches the chat the file is recorded in, then the storage chat.
        Search failures end that chat's scan.

        Returns:
            (chat_id, message_id) or None
        """
        chats = [msg_chat_id]
        if self.storage_chat_id != msg_chat_id:
            chats.append(self.storage_chat_id)

        query = f"f={file_id}"
        for chat_id in chats:
            from_message_id = 0
            for _ in range(self.config.search_page_limit):
                try:
                    batch = await self.transport.search(chat_id, query, from_message_id, SEARCH_PAGE_SIZE)
                except TransportError as e:
                    logger.debug(f"File message search stopped in chat {chat_id}: {e}")
                    break
                for message in batch.messages:
                    if not message.caption:
                        continue
                    try:
                        meta = parse_file_caption(message.caption)
                    except MetaError:
                        continue
                    if meta.file_id == file_id:
                        return chat_id, message.id
                if batch.next_from_message_id == 0:
                    break
                from_message_id = batch.next_from_message_id
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch(self, file_id: str) -> File:
        file = self.db.get_file(file_id)
        if file is None:
            raise NotFoundError("File not found")
        return file

    def _caption(self, dir_id: str, file_id: str, name: str, hash_short: str) -> str:
        directory = self.db.get_directory(dir_id)
        dir_name = None
        if directory is not None and directory.name != PLACEHOLDER_DIR_NAME:
            dir_name = directory.name
        meta = FileMeta(dir_id=dir_id, file_id=file_id, name=name, hash_short=hash_short)
        return make_file_caption_with_tag(meta, dir_name)

    async def _delete_quietly(self, chat_id: int, message_ids: List[int], file_id: str) -> None:
        try:
            await self.transport.delete(chat_id, message_ids, revoke=True)
        except TransportError as e:
            log_event(logger, logging.DEBUG, "file_stale_message_delete_failed",
                      file_id=file_id, message_ids=message_ids, error=str(e))

    def _remove_cached(self, file: File) -> None:
        try:
            self.cache.remove(file.dir_id, file.name)
        except OSError as e:
            log_event(logger, logging.WARNING, "file_delete_local_failed",
                      "Cached copy could not be removed", file_id=file.id, error=str(e))

    def _update_size_from_local(self, file_id: str, path: Path) -> None:
        try:
            local_size = path.stat().st_size
        except OSError:
            return
        if local_size > 0:
            self.db.update_file(file_id, size=local_size)

    def _to_item(self, file: File, dir_path: Path) -> FileItem:
        is_downloaded, local_size = self.cache.local_info(dir_path, file.name, file.size)
        return FileItem(
            id=file.id,
            dir_id=file.dir_id,
            name=file.name,
            size=file.size,
            local_size=local_size,
            is_downloaded=is_downloaded,
            hash=file.hash,
            tg_chat_id=file.tg_chat_id,
            tg_msg_id=file.tg_msg_id,
            created_at=file.created_at,
            is_broken=bool(file.is_broken),
        )
