"""
Synchronization Manager for msgdrive

Keeps the local index in step with the storage channel. Offers a full history
walk, an incremental walk bounded by the sync watermark, and a reconciliation
pass over a recent window that flags entries whose backing message vanished.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from config.config_manager import SyncConfig
from core.db_manager import DBManager
from core.error_handler import DriveError, log_event
from core.indexer import IndexContext, Indexer, IndexOutcome
from core.transport import StoredMessage, Transport


logger = logging.getLogger(__name__)


STORAGE_CHAT_KEY = "storage_chat_id"
WATERMARK_KEY = "storage_last_message_id"
SYNC_DONE_KEY = "storage_sync_done"
RECONCILE_DONE_KEY = "storage_reconcile_done"


@dataclass(frozen=True)
class Watermark:
    """Highest storage message id already processed. Only ever moves forward."""
    message_id: int = 0

    def advanced(self, candidate: int) -> "Watermark":
        if candidate > self.message_id:
            return Watermark(candidate)
        return self


@dataclass
class SyncStats:
    """Counters for a history walk."""
    processed: int = 0
    dirs: int = 0
    files: int = 0
    imported: int = 0
    failed: int = 0


@dataclass
class ReconcileOutcome:
    """Counters and window bounds of one reconciliation pass."""
    scanned: int = 0
    dir_seen: int = 0
    file_seen: int = 0
    imported: int = 0
    failed: int = 0
    marked_dirs: int = 0
    marked_files: int = 0
    cleared_dirs: int = 0
    cleared_files: int = 0
    min_message_id: Optional[int] = None
    max_message_id: Optional[int] = None


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SyncManager:
    """
    Manages synchronization between the storage channel and the local index.

    Responsibilities:
    - Walk the full channel history or only messages above the watermark
    - Reconcile a recent window, flagging and clearing broken entries
    - Persist the watermark and completion markers in sync state

    A failure while indexing one message is logged and counted; it never
    aborts the rest of the pass. Store unavailability still propagates.
    """

    def __init__(
        self,
        db_manager: DBManager,
        transport: Transport,
        indexer: Indexer,
        storage_chat_id: int,
        sync_config: Optional[SyncConfig] = None
    ):
        """
        Initialize SyncManager.

        Args:
            db_manager: DBManager instance for the local index
            transport: Transport for the storage channel
            indexer: Indexer applying each message
            storage_chat_id: Chat holding the stored tree
            sync_config: Page sizes and limits
        """
        self.db = db_manager
        self.transport = transport
        self.indexer = indexer
        self.storage_chat_id = storage_chat_id
        self.config = sync_config or SyncConfig()

    # ------------------------------------------------------------------
    # Watermark
    # ------------------------------------------------------------------

    def load_watermark(self) -> Watermark:
        """Read the persisted watermark; a missing or malformed value reads as 0."""
        raw = self.db.get_sync(WATERMARK_KEY)
        if not raw:
            return Watermark()
        try:
            return Watermark(max(int(raw), 0))
        except ValueError:
            logger.warning(f"Ignoring malformed sync watermark: {raw!r}")
            return Watermark()

    def advance_watermark(self, candidate: int) -> Watermark:
        """
        Move the watermark to ``candidate`` if that is further forward.

        Returns:
            The watermark now in effect
        """
        current = self.load_watermark()
        updated = current.advanced(candidate)
        if updated != current:
            self.db.set_sync(WATERMARK_KEY, str(updated.message_id))
            logger.debug(f"Sync watermark advanced to {updated.message_id}")
        return updated

    # ------------------------------------------------------------------
    # History walks
    # ------------------------------------------------------------------

    async def _apply(self, message: StoredMessage, context: IndexContext) -> IndexOutcome:
        try:
            return await self.indexer.classify_and_apply(message, context)
        except (DriveError, IntegrityError) as e:
            log_event(logger, logging.WARNING, "storage_index_failed",
                      "Message could not be indexed", message_id=message.id, error=str(e))
            return IndexOutcome(failed=True)

    @staticmethod
    def _count(stats: SyncStats, outcome: IndexOutcome) -> None:
        stats.processed += 1
        if outcome.failed:
            stats.failed += 1
        elif outcome.is_dir:
            stats.dirs += 1
        elif outcome.is_file:
            stats.files += 1
            if outcome.imported:
                stats.imported += 1

    async def sync_history(self) -> SyncStats:
        """
        Index the whole storage channel history, newest first.

        Returns:
            SyncStats for the walk
        """
        stats = SyncStats()
        context = IndexContext()
        newest = 0
        from_message_id = 0

        logger.info(f"Starting full sync of chat {self.storage_chat_id}")
        self.db.set_sync(STORAGE_CHAT_KEY, str(self.storage_chat_id))
        while True:
            batch = await self.transport.fetch_history(
                self.storage_chat_id, from_message_id, self.config.history_page_size
            )
            for message in batch.messages:
                newest = max(newest, message.id)
                self._count(stats, await self._apply(message, context))
            if batch.next_from_message_id == 0 or not batch.messages:
                break
            from_message_id = batch.next_from_message_id

        if newest:
            self.advance_watermark(newest)
        self.db.set_sync(SYNC_DONE_KEY, _now_rfc3339())
        logger.info(
            f"Full sync finished: processed={stats.processed} dirs={stats.dirs} "
            f"files={stats.files} imported={stats.imported} failed={stats.failed}"
        )
        return stats

    async def sync_new(self) -> SyncStats:
        """
        Index only messages newer than the watermark, oldest first.

        Returns:
            SyncStats for the walk
        """
        watermark = self.load_watermark()
        pending: List[StoredMessage] = []
        from_message_id = 0

        while True:
            batch = await self.transport.fetch_history(
                self.storage_chat_id, from_message_id, self.config.history_page_size
            )
            reached = False
            for message in batch.messages:
                if message.id <= watermark.message_id:
                    reached = True
                    break
                pending.append(message)
            if reached or batch.next_from_message_id == 0 or not batch.messages:
                break
            from_message_id = batch.next_from_message_id

        stats = SyncStats()
        context = IndexContext()
        for message in sorted(pending, key=lambda m: m.id):
            self._count(stats, await self._apply(message, context))

        if pending:
            self.advance_watermark(max(m.id for m in pending))
        self.db.set_sync(SYNC_DONE_KEY, _now_rfc3339())
        logger.info(f"Incremental sync above {watermark.message_id}: processed={stats.processed} failed={stats.failed}")
        return stats

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _fetch_recent(self, limit: int) -> List[StoredMessage]:
        messages: List[StoredMessage] = []
        from_message_id = 0
        while len(messages) < limit:
            page_size = min(self.config.history_page_size, limit - len(messages))
            batch = await self.transport.fetch_history(self.storage_chat_id, from_message_id, page_size)
            messages.extend(batch.messages[:limit - len(messages)])
            if batch.next_from_message_id == 0 or not batch.messages:
                break
            from_message_id = batch.next_from_message_id
        return messages

    async def reconcile_window(self, limit: Optional[int] = None) -> ReconcileOutcome:
        """
        Re-index the most recent messages and annotate drifted entries.

        Every entry backed by a message id at or above the window minimum is
        marked broken when its message was not seen, and cleared when it was.
        Entries are never deleted here.

        Args:
            limit: Number of recent messages to scan (default from config, min 1)

        Returns:
            ReconcileOutcome with counters and the window bounds
        """
        limit = max(1, limit if limit is not None else self.config.reconcile_limit)
        outcome = ReconcileOutcome()
        messages = await self._fetch_recent(limit)
        if not messages:
            self.db.set_sync(RECONCILE_DONE_KEY, _now_rfc3339())
            logger.info("Reconcile found no messages")
            return outcome

        min_id = min(m.id for m in messages)
        max_id = max(m.id for m in messages)
        outcome.min_message_id = min_id
        outcome.max_message_id = max_id

        # Indexing clears the flag on upsert, so the prior state is taken first.
        known_dirs = {d.id: bool(d.is_broken) for d in self.db.get_directories_from_message(min_id)}
        broken_files = {
            f.id for f in self.db.get_files_from_message(self.storage_chat_id, min_id) if f.is_broken
        }

        dir_seen = set()
        file_seen = set()
        context = IndexContext()
        for message in messages:
            outcome.scanned += 1
            result = await self._apply(message, context)
            if result.failed:
                outcome.failed += 1
            elif result.is_dir:
                dir_seen.add(message.id)
            elif result.is_file:
                file_seen.add(message.id)
                if result.imported:
                    outcome.imported += 1

        outcome.dir_seen = len(dir_seen)
        outcome.file_seen = len(file_seen)

        self._annotate_dirs(outcome, min_id, max_id, dir_seen, known_dirs)
        self._annotate_files(outcome, min_id, file_seen, broken_files)
        self.advance_watermark(max_id)

        self.db.set_sync(RECONCILE_DONE_KEY, _now_rfc3339())
        logger.info(
            f"Reconciled {outcome.scanned} messages: failed={outcome.failed} "
            f"marked={outcome.marked_dirs}/{outcome.marked_files} "
            f"cleared={outcome.cleared_dirs}/{outcome.cleared_files}"
        )
        return outcome

    def _annotate_dirs(self, outcome: ReconcileOutcome, min_id: int, max_id: int,
                       dir_seen: set, known_dirs: dict) -> None:
        for directory in self.db.get_directories_from_message(min_id):
            # Published during this pass, e.g. an import target folder.
            if directory.id not in known_dirs and directory.tg_msg_id > max_id:
                continue
            if directory.tg_msg_id not in dir_seen:
                if not directory.is_broken:
                    self.db.set_directory_broken(directory.id, True)
                    outcome.marked_dirs += 1
                    log_event(logger, logging.INFO, "storage_dir_marked_broken",
                              dir_id=directory.id, message_id=directory.tg_msg_id)
            elif directory.is_broken or known_dirs.get(directory.id, False):
                if directory.is_broken:
                    self.db.set_directory_broken(directory.id, False)
                outcome.cleared_dirs += 1

    def _annotate_files(self, outcome: ReconcileOutcome, min_id: int,
                        file_seen: set, broken_files: set) -> None:
        for file in self.db.get_files_from_message(self.storage_chat_id, min_id):
            if file.tg_msg_id not in file_seen:
                if not file.is_broken:
                    self.db.set_file_broken(file.id, True)
                    outcome.marked_files += 1
                    log_event(logger, logging.INFO, "storage_file_marked_broken",
                              file_id=file.id, message_id=file.tg_msg_id)
            elif file.is_broken or file.id in broken_files:
                if file.is_broken:
                    self.db.set_file_broken(file.id, False)
                outcome.cleared_files += 1
