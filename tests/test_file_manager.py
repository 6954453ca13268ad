"""
Tests for the file manager.

Covers upload, the move fallback chain, delete, repair, downloads through the
content cache, and one full create/upload/move/reconcile/repair scenario.
"""

import hashlib

import pytest

from config.config_manager import SyncConfig
from core.db_manager import DBManager
from core.download_cache import ContentCache
from core.error_handler import FallbackExhaustedError, NotFoundError, TransportError, ValidationError
from core.fsmeta import parse_file_caption
from core.indexer import Indexer
from core.memory_transport import InMemoryTransport
from core.sync_manager import SyncManager
from logic.directory_manager import DirectoryManager
from logic.file_manager import FileManager, RepairResult, compute_hash_short


CHAT_ID = -1001


@pytest.fixture
def db_manager(tmp_path):
    """Create a temporary database for testing."""
    manager = DBManager(tmp_path / "index.db")
    manager.initialize_database()
    return manager


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def sync_config():
    return SyncConfig(caption_retry_delay=0, exists_retry_delays=[0])


@pytest.fixture
def cache(tmp_path, db_manager):
    content_cache = ContentCache(tmp_path / "cache", db_manager)
    content_cache.ensure_dirs()
    return content_cache


@pytest.fixture
def directories(db_manager, transport, sync_config):
    return DirectoryManager(db_manager, transport, CHAT_ID, sync_config)


@pytest.fixture
def files(db_manager, transport, cache, sync_config):
    return FileManager(db_manager, transport, cache, CHAT_ID, sync_config)


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "src" / "a.txt"
    path.parent.mkdir()
    path.write_bytes(b"hello")
    return path


def caption_meta(transport, message_id):
    return parse_file_caption(transport.get_message(CHAT_ID, message_id).caption)


class TestHashing:
    """Tests for the content fingerprint."""

    def test_compute_hash_short(self, source_file):
        assert compute_hash_short(source_file) == hashlib.sha256(b"hello").hexdigest()[:8]


class TestUpload:
    """Tests for uploading."""

    @pytest.mark.asyncio
    async def test_upload(self, files, directories, db_manager, transport, source_file):
        """Test uploading indexes the file and posts a tagged caption."""
        docs = await directories.create(None, "Docs")

        file_id = await files.upload(docs, source_file)

        file = db_manager.get_file(file_id)
        assert file.name == "a.txt"
        assert file.size == 5
        assert file.hash == compute_hash_short(source_file)
        assert file.tg_chat_id == CHAT_ID
        meta = caption_meta(transport, file.tg_msg_id)
        assert (meta.dir_id, meta.file_id, meta.name) == (docs, file_id, "a.txt")
        assert "#Docs" in transport.get_message(CHAT_ID, file.tg_msg_id).caption

    @pytest.mark.asyncio
    async def test_upload_normalizes_name(self, files, directories, db_manager, transport, tmp_path):
        """Test a file name with a whitespace run is stored the way the caption decodes."""
        docs = await directories.create(None, "Docs")
        path = tmp_path / "my  notes _v2.txt"
        path.write_bytes(b"notes")

        file_id = await files.upload(docs, path)

        file = db_manager.get_file(file_id)
        assert file.name == "my notes_v2.txt"
        assert caption_meta(transport, file.tg_msg_id).name == file.name

    @pytest.mark.asyncio
    async def test_upload_unknown_directory(self, files, source_file):
        with pytest.raises(NotFoundError):
            await files.upload("missing", source_file)

    @pytest.mark.asyncio
    async def test_upload_requires_regular_file(self, files, directories, tmp_path):
        """Test directories cannot be uploaded."""
        docs = await directories.create(None, "Docs")
        with pytest.raises(ValidationError):
            await files.upload(docs, tmp_path)

    @pytest.mark.asyncio
    async def test_failed_publish_indexes_nothing(self, files, directories, db_manager, transport, source_file):
        """Test a failed upload leaves the index untouched."""
        docs = await directories.create(None, "Docs")
        transport.fail("publish_file", times=1)

        with pytest.raises(TransportError):
            await files.upload(docs, source_file)

        assert db_manager.get_files_for_directory(docs) == []


class TestMove:
    """Tests for the move fallback chain."""

    @pytest.mark.asyncio
    async def test_move_edits_caption_in_place(self, files, directories, db_manager, transport, source_file):
        """Test moving a file rewrites its caption."""
        docs = await directories.create(None, "Docs")
        archive = await directories.create(None, "Archive")
        file_id = await files.upload(docs, source_file)
        message_id = db_manager.get_file(file_id).tg_msg_id

        await files.move(file_id, archive)

        file = db_manager.get_file(file_id)
        assert file.dir_id == archive
        assert file.tg_msg_id == message_id
        assert caption_meta(transport, message_id).dir_id == archive
        assert "#Archive" in transport.get_message(CHAT_ID, message_id).caption

    @pytest.mark.asyncio
    async def test_same_directory_is_noop(self, files, directories, transport, source_file):
        """Test moving into the current directory does nothing."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        calls = len(transport.calls)

        await files.move(file_id, docs)

        assert len(transport.calls) == calls

    @pytest.mark.asyncio
    async def test_unknown_target(self, files, directories, source_file):
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)

        with pytest.raises(NotFoundError):
            await files.move(file_id, "missing")

    @pytest.mark.asyncio
    async def test_message_relocated_is_found_by_search(self, files, directories, db_manager, transport, source_file):
        """Test a file whose message moved is found through search."""
        docs = await directories.create(None, "Docs")
        archive = await directories.create(None, "Archive")
        file_id = await files.upload(docs, source_file)
        old = transport.get_message(CHAT_ID, db_manager.get_file(file_id).tg_msg_id)
        relocated = transport.inject_message(CHAT_ID, caption=old.caption, content=b"hello", file_name="a.txt")
        transport.remove_message(CHAT_ID, old.id)

        await files.move(file_id, archive)

        file = db_manager.get_file(file_id)
        assert file.tg_msg_id == relocated
        assert file.dir_id == archive
        assert caption_meta(transport, relocated).dir_id == archive

    @pytest.mark.asyncio
    async def test_resend_when_caption_cannot_be_edited(self, files, directories, db_manager, transport, source_file):
        """Test a failed edit falls back to resending the attachment."""
        docs = await directories.create(None, "Docs")
        archive = await directories.create(None, "Archive")
        file_id = await files.upload(docs, source_file)
        old_message_id = db_manager.get_file(file_id).tg_msg_id
        transport.fail("edit_caption")

        await files.move(file_id, archive)

        file = db_manager.get_file(file_id)
        assert file.tg_msg_id != old_message_id
        assert transport.get_message(CHAT_ID, old_message_id) is None
        assert caption_meta(transport, file.tg_msg_id).dir_id == archive
        assert transport.call_count("resend_as_new") == 1

    @pytest.mark.asyncio
    async def test_duplicate_as_last_resort(self, files, directories, db_manager, transport, source_file):
        """Test duplication is used when edit and resend both fail."""
        docs = await directories.create(None, "Docs")
        archive = await directories.create(None, "Archive")
        file_id = await files.upload(docs, source_file)
        old_message_id = db_manager.get_file(file_id).tg_msg_id
        transport.fail("edit_caption", times=2)
        transport.fail("resend_as_new")

        await files.move(file_id, archive)

        file = db_manager.get_file(file_id)
        assert file.dir_id == archive
        assert file.tg_msg_id != old_message_id
        assert transport.get_message(CHAT_ID, old_message_id) is None
        assert caption_meta(transport, file.tg_msg_id).dir_id == archive

    @pytest.mark.asyncio
    async def test_every_step_failing_reports_each_reason(self, files, directories, db_manager, transport, source_file):
        """Test an exhausted move lists the reason of each step."""
        docs = await directories.create(None, "Docs")
        archive = await directories.create(None, "Archive")
        file_id = await files.upload(docs, source_file)
        transport.fail("edit_caption", message="caption edit refused")
        transport.fail("resend_as_new", message="resend refused")
        transport.duplicate_returns_none = True

        with pytest.raises(FallbackExhaustedError) as exc_info:
            await files.move(file_id, archive)

        text = str(exc_info.value)
        assert "caption edit refused" in text
        assert "resend refused" in text
        assert "content protection" in text
        assert db_manager.get_file(file_id).dir_id == docs


class TestDelete:
    """Tests for deletion."""

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, files, directories, db_manager, transport, source_file):
        """Test delete removes the message, the row and the local copy."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        message_id = db_manager.get_file(file_id).tg_msg_id
        cached = await files.download(file_id)

        await files.delete(file_id)

        assert db_manager.get_file(file_id) is None
        assert transport.get_message(CHAT_ID, message_id) is None
        assert not cached.exists()

    @pytest.mark.asyncio
    async def test_delete_when_remote_fails(self, files, directories, db_manager, transport, source_file):
        """Test a remote failure still removes the local row."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        transport.fail("delete")

        await files.delete(file_id)

        assert db_manager.get_file(file_id) is None

    @pytest.mark.asyncio
    async def test_delete_unknown(self, files):
        with pytest.raises(NotFoundError):
            await files.delete("missing")

    @pytest.mark.asyncio
    async def test_delete_many(self, files, directories, db_manager, transport, source_file, tmp_path):
        """Test deleting several files at once."""
        docs = await directories.create(None, "Docs")
        other = tmp_path / "b.txt"
        other.write_bytes(b"bb")
        first = await files.upload(docs, source_file)
        second = await files.upload(docs, other)

        removed = await files.delete_many([first, "missing", second])

        assert removed == 2
        assert transport.call_count("delete") == 1
        assert db_manager.get_files_for_directory(docs) == []


class TestRepair:
    """Tests for repair."""

    @pytest.mark.asyncio
    async def test_tampered_caption_is_rewritten(self, files, directories, db_manager, transport, source_file):
        """Test repair restores a caption edited by someone else."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        message_id = db_manager.get_file(file_id).tg_msg_id
        transport.set_caption(CHAT_ID, message_id, "edited by hand")

        assert await files.repair(file_id) == RepairResult.REPAIRED
        assert caption_meta(transport, message_id).file_id == file_id

    @pytest.mark.asyncio
    async def test_needs_source(self, files, directories, db_manager, transport, source_file):
        """Test repair of a missing message asks for a local source."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        transport.remove_message(CHAT_ID, db_manager.get_file(file_id).tg_msg_id)

        assert await files.repair(file_id) == RepairResult.NEEDS_SOURCE

    @pytest.mark.asyncio
    async def test_cached_copy_is_used(self, files, directories, db_manager, transport, source_file):
        """Test repair uploads the cached copy when one exists."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        old_message_id = db_manager.get_file(file_id).tg_msg_id
        await files.download(file_id)
        transport.remove_message(CHAT_ID, old_message_id)
        db_manager.set_file_broken(file_id, True)

        assert await files.repair(file_id) == RepairResult.REPAIRED

        file = db_manager.get_file(file_id)
        assert file.tg_msg_id != old_message_id
        assert file.is_broken is False
        assert transport.call_count("publish_file") == 2

    @pytest.mark.asyncio
    async def test_source_must_be_a_file(self, files, directories, db_manager, transport, source_file, tmp_path):
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        transport.remove_message(CHAT_ID, db_manager.get_file(file_id).tg_msg_id)

        with pytest.raises(ValidationError):
            await files.repair(file_id, local_source=tmp_path)


class TestDownloadAndQueries:
    """Tests for downloads, listing and search."""

    @pytest.mark.asyncio
    async def test_download_reuses_cached_copy(self, files, directories, cache, transport, source_file):
        """Test download returns the cached copy without fetching."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)

        first = await files.download(file_id)
        second = await files.download(file_id)

        assert first == cache.downloads_dir / "Docs" / "a.txt"
        assert first.read_bytes() == b"hello"
        assert second == first
        assert transport.call_count("download") == 1

    @pytest.mark.asyncio
    async def test_overwrite_downloads_again(self, files, directories, transport, source_file):
        """Test overwrite forces a fresh download."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        first = await files.download(file_id)
        first.write_bytes(b"stale")

        second = await files.download(file_id, overwrite=True)

        assert second == first
        assert second.read_bytes() == b"hello"
        assert transport.call_count("download") == 2

    @pytest.mark.asyncio
    async def test_download_follows_relocated_message(self, files, directories, db_manager, transport, source_file):
        """Test download finds the file after its message moved."""
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)
        old = transport.get_message(CHAT_ID, db_manager.get_file(file_id).tg_msg_id)
        relocated = transport.inject_message(CHAT_ID, caption=old.caption, content=b"hello", file_name="a.txt")
        transport.remove_message(CHAT_ID, old.id)

        path = await files.download(file_id)

        assert path.read_bytes() == b"hello"
        assert db_manager.get_file(file_id).tg_msg_id == relocated

    @pytest.mark.asyncio
    async def test_list_and_search(self, files, directories, source_file, tmp_path):
        """Test listing a directory and searching by name."""
        docs = await directories.create(None, "Docs")
        other_dir = await directories.create(None, "Other")
        report = tmp_path / "Report.PDF"
        report.write_bytes(b"%PDF")
        a_id = await files.upload(docs, source_file)
        await files.upload(other_dir, report)
        await files.download(a_id)

        [item] = files.list_files(docs)
        assert item.id == a_id
        assert item.is_downloaded is True
        assert item.local_size == 5

        assert [i.name for i in files.search(file_type=".pdf")] == ["Report.PDF"]
        assert [i.name for i in files.search(dir_id="ROOT", name="A.TX")] == ["a.txt"]
        assert [i.name for i in files.search(dir_id=other_dir)] == ["Report.PDF"]
        assert len(files.search(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_find_local_copy(self, files, directories, source_file):
        docs = await directories.create(None, "Docs")
        file_id = await files.upload(docs, source_file)

        assert files.find_local_copy(file_id) is None
        path = await files.download(file_id)
        assert files.find_local_copy(file_id) == path


class TestScenario:
    """A full lifecycle across directories, files and reconciliation."""

    @pytest.mark.asyncio
    async def test_lifecycle(self, files, directories, db_manager, transport, sync_config, source_file):
        """Test create, upload, move, reconcile and repair end to end."""
        docs = await directories.create(None, "Docs")
        archive = await directories.create(None, "Archive")
        file_id = await files.upload(docs, source_file)
        m3 = db_manager.get_file(file_id).tg_msg_id

        await files.move(file_id, archive)
        assert db_manager.get_file(file_id).dir_id == archive
        assert db_manager.get_file(file_id).tg_msg_id == m3

        await directories.delete(docs)
        assert db_manager.get_directory(docs) is None

        transport.remove_message(CHAT_ID, m3)
        indexer = Indexer(db_manager, transport, directories, CHAT_ID, sync_config)
        sync = SyncManager(db_manager, transport, indexer, CHAT_ID, sync_config)
        outcome = await sync.reconcile_window(50)

        assert outcome.marked_files == 1
        assert db_manager.get_file(file_id).is_broken is True

        result = await files.repair(file_id, local_source=source_file)

        file = db_manager.get_file(file_id)
        assert result == RepairResult.REPAIRED
        assert file.is_broken is False
        assert file.tg_msg_id > m3
        assert caption_meta(transport, file.tg_msg_id).dir_id == archive
