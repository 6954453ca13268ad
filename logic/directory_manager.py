"""
Directory Manager for msgdrive

Creates, renames, moves, deletes and repairs directories. Every directory is
backed by one text message in the storage channel; the local index row is
written first so a failed publish leaves a row that can be retried.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from config.config_manager import SyncConfig
from core.db_manager import DBManager
from core.error_handler import (
    DirectoryNotEmptyError,
    NotFoundError,
    TransportError,
    ValidationError,
    log_event,
)
from core.fallback import FallbackStep, StepSkipped, run_fallback_chain
from core.fsmeta import (
    ROOT_PARENT,
    DirMeta,
    MetaError,
    make_dir_message,
    normalize_name,
    parse_dir_message,
)
from core.transport import Transport
from models.database import Directory, generate_id, unix_now


logger = logging.getLogger(__name__)


MAX_ANCESTOR_STEPS = 256
SEARCH_PAGE_SIZE = 100


@dataclass
class DirNode:
    """Node of the directory tree returned by ``list_tree``."""
    id: str
    name: str
    parent_id: Optional[str]
    is_broken: bool = False
    children: List["DirNode"] = field(default_factory=list)


def normalize_parent_id(parent_id: Optional[str]) -> Optional[str]:
    """Map ``None``, blank and ``"ROOT"`` to None (root)."""
    if parent_id is None:
        return None
    parent_id = parent_id.strip()
    if not parent_id or parent_id == ROOT_PARENT:
        return None
    return parent_id


class DirectoryManager:
    """
    Manages directory operations against the index and the storage channel.

    Responsibilities:
    - Create directories and publish their metadata message
    - Rename and move directories, editing the message in place when possible
    - Protect the tree against cycles on move
    - Delete empty directories with all of their historical messages
    - Repair directories whose message went missing
    """

    def __init__(
        self,
        db_manager: DBManager,
        transport: Transport,
        storage_chat_id: int,
        sync_config: Optional[SyncConfig] = None
    ):
        """
        Initialize DirectoryManager.

        Args:
            db_manager: DBManager instance for the local index
            transport: Transport for the storage channel
            storage_chat_id: Chat holding the stored tree
            sync_config: Paging limits for message searches
        """
        self.db = db_manager
        self.transport = transport
        self.storage_chat_id = storage_chat_id
        self.config = sync_config or SyncConfig()

    async def create(self, parent_id: Optional[str], name: str) -> str:
        """
        Create a directory and publish its metadata message.

        Args:
            parent_id: Parent directory id, or None/"ROOT" for the root
            name: Directory name

        Returns:
            The new directory id

        Raises:
            ValidationError: If the name is empty
            NotFoundError: If the parent does not exist
            TransportError: If publishing failed; the row is kept and can be
                retried with ``rename`` or ``repair``
        """
        name = self._clean_name(name)
        parent_id = normalize_parent_id(parent_id)
        if parent_id is not None and not self.db.directory_exists(parent_id):
            raise NotFoundError("Parent directory not found")

        dir_id = generate_id()
        updated_at = unix_now()
        self.db.insert_directory(dir_id, parent_id, name, updated_at)

        text = make_dir_message(DirMeta(dir_id=dir_id, parent_id=parent_id or ROOT_PARENT, name=name))
        try:
            uploaded = await self.transport.publish_text(self.storage_chat_id, text)
        except TransportError as e:
            log_event(logger, logging.WARNING, "dir_publish_failed",
                      "Directory saved locally, message not published",
                      dir_id=dir_id, error=str(e))
            raise

        self.db.update_directory(dir_id, tg_msg_id=uploaded.message_id, updated_at=updated_at, is_broken=False)
        logger.info(f"Created directory '{name}' ({dir_id})")
        return dir_id

    async def rename(self, dir_id: str, name: str) -> None:
        """
        Rename a directory.

        No-op when the name is unchanged and the directory is already
        published.

        Raises:
            ValidationError: If the name is empty or the root is targeted
            NotFoundError: If the directory does not exist
            FallbackExhaustedError: If the message could be neither edited
                nor replaced
        """
        name = self._clean_name(name)
        directory = self._fetch(dir_id)
        if directory.name == name and directory.tg_msg_id is not None:
            return

        message_id = await self._ensure_message(directory, directory.parent_id, name)
        self.db.update_directory(
            dir_id,
            name=name,
            tg_msg_id=message_id,
            updated_at=unix_now(),
            is_broken=False,
        )
        logger.info(f"Renamed directory {dir_id} to '{name}'")

    async def move(self, dir_id: str, parent_id: Optional[str]) -> None:
        """
        Move a directory under a new parent.

        Raises:
            ValidationError: If the target is the directory itself or one of
                its descendants
            NotFoundError: If the directory or the new parent does not exist
        """
        directory = self._fetch(dir_id)
        parent_id = normalize_parent_id(parent_id)

        if parent_id is not None:
            if parent_id == dir_id:
                raise ValidationError("Cannot move a directory into itself")
            if not self.db.directory_exists(parent_id):
                raise NotFoundError("Parent directory not found")
            if self._has_ancestor(parent_id, dir_id):
                raise ValidationError("Cannot move a directory into its own subdirectory")

        if directory.parent_id == parent_id and directory.tg_msg_id is not None:
            return

        message_id = await self._ensure_message(directory, parent_id, directory.name)
        self.db.update_directory(
            dir_id,
            parent_id=parent_id,
            tg_msg_id=message_id,
            updated_at=unix_now(),
            is_broken=False,
        )
        logger.info(f"Moved directory {dir_id} under {parent_id or ROOT_PARENT}")

    async def delete(self, dir_id: str) -> None:
        """
        Delete an empty directory.

        The backing message and any older copies found by searching for the
        directory id are deleted best-effort; the row is always removed.

        Raises:
            DirectoryNotEmptyError: If the directory still has children
            NotFoundError: If the directory does not exist
        """
        directory = self._fetch(dir_id)
        dir_count, file_count = self.db.count_children(dir_id)
        if dir_count > 0 or file_count > 0:
            raise DirectoryNotEmptyError(dir_id, file_count, dir_count)

        message_ids = set()
        if directory.tg_msg_id is not None:
            message_ids.add(directory.tg_msg_id)
        message_ids.update(await self.find_dir_messages(dir_id))

        if message_ids:
            try:
                await self.transport.delete(self.storage_chat_id, sorted(message_ids), revoke=True)
            except TransportError as e:
                log_event(logger, logging.WARNING, "dir_delete_message_failed",
                          "Could not delete directory message",
                          dir_id=dir_id, error=str(e))

        self.db.delete_directory(dir_id)
        logger.info(f"Deleted directory {dir_id}")

    async def repair(self, dir_id: str) -> None:
        """
        Republish the metadata message of a directory.

        Edits the existing message in place and falls back to publishing a
        replacement. Clears the broken flag on success.
        """
        directory = self._fetch(dir_id)
        message_id = await self._ensure_message(directory, directory.parent_id, directory.name)
        self.db.update_directory(dir_id, tg_msg_id=message_id, updated_at=unix_now(), is_broken=False)
        logger.info(f"Repaired directory {dir_id}")

    def list_tree(self) -> DirNode:
        """Return the directory tree under a synthetic ROOT node, children sorted by name."""
        directories = self.db.get_all_directories()
        nodes = {
            d.id: DirNode(id=d.id, name=d.name, parent_id=d.parent_id, is_broken=bool(d.is_broken))
            for d in directories
        }
        root = DirNode(id=ROOT_PARENT, name=ROOT_PARENT, parent_id=None)
        for directory in directories:
            node = nodes[directory.id]
            parent = nodes.get(directory.parent_id) if directory.parent_id else None
            (parent or root).children.append(node)
        return root

    def find_by_name(self, name: str) -> Optional[Directory]:
        return self.db.find_directory_by_name(name)

    async def ensure_by_name(self, name: str) -> Directory:
        """Return the directory with this name, creating it at the root if absent."""
        found = self.db.find_directory_by_name(name)
        if found is not None:
            return found
        dir_id = await self.create(None, name)
        return self.db.get_directory(dir_id)

    async def find_dir_messages(self, dir_id: str) -> List[int]:
        """
        Search the storage chat for every message describing this directory.

        Search failures end the scan early; results found so far are kept.
        """
        query = f"d={dir_id}"
        found: List[int] = []
        from_message_id = 0
        for _ in range(self.config.search_page_limit):
            try:
                batch = await self.transport.search(
                    self.storage_chat_id, query, from_message_id, SEARCH_PAGE_SIZE
                )
            except TransportError as e:
                logger.debug(f"Directory message search stopped for {dir_id}: {e}")
                break
            for message in batch.messages:
                if not message.text:
                    continue
                try:
                    meta = parse_dir_message(message.text)
                except MetaError:
                    continue
                if meta.dir_id == dir_id:
                    found.append(message.id)
            if batch.next_from_message_id == 0:
                break
            from_message_id = batch.next_from_message_id
        return found

    def _fetch(self, dir_id: str) -> Directory:
        if normalize_parent_id(dir_id) is None:
            raise ValidationError("The root directory cannot be modified")
        directory = self.db.get_directory(dir_id)
        if directory is None:
            raise NotFoundError("Directory not found")
        return directory

    @staticmethod
    def _clean_name(name: str) -> str:
        name = normalize_name(name)
        if not name:
            raise ValidationError("Directory name cannot be empty")
        return name

    def _has_ancestor(self, start_id: str, target_id: str) -> bool:
        """
        Walk parent links from ``start_id`` and report whether ``target_id`` is reached.

        The walk is capped; hitting the cap is treated as a cycle.
        """
        current: Optional[str] = start_id
        steps = 0
        while current is not None:
            if current == target_id:
                return True
            steps += 1
            if steps > MAX_ANCESTOR_STEPS:
                logger.warning(f"Ancestor walk from {start_id} exceeded {MAX_ANCESTOR_STEPS} steps")
                return True
            found, parent_id = self.db.get_parent_id(current)
            if not found:
                return False
            current = normalize_parent_id(parent_id)
        return False

    async def _ensure_message(self, directory: Directory, parent_id: Optional[str], name: str) -> int:
        """
        Make the storage channel hold an up-to-date message for the directory.

        Returns:
            Id of the message now backing the directory
        """
        text = make_dir_message(DirMeta(
            dir_id=directory.id,
            parent_id=parent_id or ROOT_PARENT,
            name=name,
        ))
        chat_id = self.storage_chat_id
        old_message_id = directory.tg_msg_id

        async def edit_in_place() -> int:
            if old_message_id is None:
                raise StepSkipped("directory has no message yet")
            await self.transport.edit_text(chat_id, old_message_id, text)
            return old_message_id

        async def publish_replacement() -> int:
            uploaded = await self.transport.publish_text(chat_id, text)
            if old_message_id is not None:
                try:
                    await self.transport.delete(chat_id, [old_message_id], revoke=True)
                except TransportError as e:
                    log_event(logger, logging.DEBUG, "dir_stale_message_delete_failed",
                              dir_id=directory.id, message_id=old_message_id, error=str(e))
            return uploaded.message_id

        return await run_fallback_chain(
            "dir_message_update",
            [
                FallbackStep("edit in place", edit_in_place),
                FallbackStep("publish replacement", publish_replacement, terminal=True),
            ],
            entity_id=directory.id,
        )
