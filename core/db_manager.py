"""
Database manager for the msgdrive local index.

This module provides the DBManager class which handles all database operations
including initialization, CRUD and upsert operations for directories and
files, and the sync state key/value store.
"""

from pathlib import Path
from typing import List, Optional, Tuple
from contextlib import contextmanager
from sqlalchemy import create_engine, event, func, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import sessionmaker, Session

from models.database import Base, Directory, File, SyncState


class DBManager:
    """
    Manages database operations for the local index.

    Every method opens a short session and returns detached instances, so no
    transaction is ever held across a transport call.
    """

    def __init__(self, db_path: Path):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self.engine = None
        self.SessionLocal = None

    def initialize_database(self):
        """
        Initialize the database by creating the schema if it doesn't exist.

        Creates all tables defined in the models and sets up the session factory.
        """
        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_url = f"sqlite:///{self.db_path}"
        self.engine = create_engine(
            db_url,
            echo=False,
            pool_size=1,
            max_overflow=0,
            connect_args={"check_same_thread": False}
        )

        # Enable foreign key constraints for SQLite
        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        Base.metadata.create_all(self.engine)
        self._migrate()

        # Create session factory with expire_on_commit=False to avoid detached instance errors
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def _migrate(self) -> None:
        """Lightweight migration: add ``is_broken`` to indexes created before it existed."""
        with self.engine.begin() as conn:
            for table in ("directories", "files"):
                cols = [row[1] for row in conn.execute(text(f"PRAGMA table_info('{table}')"))]
                if 'is_broken' not in cols:
                    conn.execute(text(
                        f"ALTER TABLE {table} ADD COLUMN is_broken INTEGER DEFAULT 0 NOT NULL"
                    ))

    @contextmanager
    def get_session(self) -> Session:
        """
        Context manager for database sessions with automatic rollback on error.

        Yields:
            Session: SQLAlchemy session object
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Directory operations
    # ------------------------------------------------------------------

    def get_directory(self, dir_id: str) -> Optional[Directory]:
        """Fetch a single directory by its ID."""
        with self.get_session() as session:
            directory = session.query(Directory).filter(Directory.id == dir_id).first()
            if directory:
                session.expunge(directory)
            return directory

    def directory_exists(self, dir_id: str) -> bool:
        with self.get_session() as session:
            return session.query(Directory.id).filter(Directory.id == dir_id).first() is not None

    def get_all_directories(self) -> List[Directory]:
        """Return all directories ordered by name."""
        with self.get_session() as session:
            directories = session.query(Directory).order_by(Directory.name).all()
            session.expunge_all()
            return directories

    def get_parent_id(self, dir_id: str) -> Tuple[bool, Optional[str]]:
        """
        Return ``(found, parent_id)`` for a directory.

        ``found`` is False when the directory does not exist.
        """
        with self.get_session() as session:
            row = session.query(Directory.parent_id).filter(Directory.id == dir_id).first()
            if row is None:
                return False, None
            return True, row[0]

    def count_children(self, dir_id: str) -> Tuple[int, int]:
        """
        Count the direct children of a directory.

        Returns:
            Tuple of (subdirectory count, file count)
        """
        with self.get_session() as session:
            dir_count = session.query(func.count(Directory.id)).filter(
                Directory.parent_id == dir_id
            ).scalar()
            file_count = session.query(func.count(File.id)).filter(
                File.dir_id == dir_id
            ).scalar()
            return dir_count or 0, file_count or 0

    def insert_directory(
        self,
        dir_id: str,
        parent_id: Optional[str],
        name: str,
        updated_at: int,
        tg_msg_id: Optional[int] = None,
    ) -> Directory:
        """
        Insert a new directory row.

        Raises:
            IntegrityError: If a directory with the same ID exists or the
                parent is unknown
        """
        with self.get_session() as session:
            directory = Directory(
                id=dir_id,
                parent_id=parent_id,
                name=name,
                tg_msg_id=tg_msg_id,
                updated_at=updated_at,
                is_broken=False,
            )
            session.add(directory)
            session.flush()
            session.expunge(directory)
            return directory

    def update_directory(self, dir_id: str, **fields) -> None:
        """Update the given columns of a directory."""
        with self.get_session() as session:
            session.query(Directory).filter(Directory.id == dir_id).update(
                fields, synchronize_session=False
            )

    def upsert_directory(
        self,
        dir_id: str,
        parent_id: Optional[str],
        name: str,
        tg_msg_id: Optional[int],
        updated_at: int,
    ) -> None:
        """Insert a directory or overwrite it on id conflict. Clears ``is_broken``."""
        values = {
            "id": dir_id,
            "parent_id": parent_id,
            "name": name,
            "tg_msg_id": tg_msg_id,
            "updated_at": updated_at,
            "is_broken": False,
        }
        stmt = sqlite_insert(Directory).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Directory.id],
            set_={key: stmt.excluded[key] for key in values if key != "id"},
        )
        with self.get_session() as session:
            session.execute(stmt)

    def ensure_directory_placeholder(self, dir_id: str, name: str, updated_at: int) -> bool:
        """
        Insert a placeholder root directory unless the id already exists.

        Returns:
            True if a placeholder row was created
        """
        stmt = sqlite_insert(Directory).values(
            id=dir_id,
            parent_id=None,
            name=name,
            tg_msg_id=None,
            updated_at=updated_at,
            is_broken=False,
        ).on_conflict_do_nothing(index_elements=[Directory.id])
        with self.get_session() as session:
            result = session.execute(stmt)
            return (result.rowcount or 0) > 0

    def find_directory_by_name(self, name: str) -> Optional[Directory]:
        """Case-insensitive name lookup preferring root directories, then the most recent."""
        with self.get_session() as session:
            directory = (
                session.query(Directory)
                .filter(func.lower(Directory.name) == func.lower(name))
                .order_by(Directory.parent_id.is_(None).desc(), Directory.updated_at.desc())
                .first()
            )
            if directory:
                session.expunge(directory)
            return directory

    def get_directories_from_message(self, min_message_id: int) -> List[Directory]:
        """Return published directories whose backing message id is >= the given id."""
        with self.get_session() as session:
            directories = session.query(Directory).filter(
                Directory.tg_msg_id.isnot(None),
                Directory.tg_msg_id >= min_message_id,
            ).all()
            session.expunge_all()
            return directories

    def set_directory_broken(self, dir_id: str, is_broken: bool) -> None:
        self.update_directory(dir_id, is_broken=is_broken)

    def delete_directory(self, dir_id: str) -> None:
        """Delete a directory row by its ID."""
        with self.get_session() as session:
            session.query(Directory).filter(Directory.id == dir_id).delete(
                synchronize_session=False
            )

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def get_file(self, file_id: str) -> Optional[File]:
        """Fetch a single file by its ID."""
        with self.get_session() as session:
            file = session.query(File).filter(File.id == file_id).first()
            if file:
                session.expunge(file)
            return file

    def get_file_by_location(self, chat_id: int, message_id: int) -> Optional[File]:
        """Fetch the file backed by the given message, if any."""
        with self.get_session() as session:
            file = session.query(File).filter(
                File.tg_chat_id == chat_id,
                File.tg_msg_id == message_id,
            ).first()
            if file:
                session.expunge(file)
            return file

    def get_files_for_directory(self, dir_id: str) -> List[File]:
        """Return the files of a directory ordered by name."""
        with self.get_session() as session:
            files = session.query(File).filter(File.dir_id == dir_id).order_by(File.name).all()
            session.expunge_all()
            return files

    def search_files(
        self,
        dir_id: Optional[str] = None,
        name: Optional[str] = None,
        extension: Optional[str] = None,
        limit: int = 500,
    ) -> List[File]:
        """
        Search files by directory, name substring and extension.

        Args:
            dir_id: Restrict to one directory
            name: Case-insensitive substring of the file name
            extension: File extension without the leading dot
            limit: Maximum number of rows
        """
        with self.get_session() as session:
            query = session.query(File)
            if dir_id:
                query = query.filter(File.dir_id == dir_id)
            if name:
                query = query.filter(func.lower(File.name).like(f"%{name.lower()}%"))
            if extension:
                query = query.filter(func.lower(File.name).like(f"%.{extension.lower()}"))
            files = query.order_by(File.name).limit(max(1, limit)).all()
            session.expunge_all()
            return files

    def insert_file(
        self,
        file_id: str,
        dir_id: str,
        name: str,
        size: int,
        hash_short: str,
        tg_chat_id: int,
        tg_msg_id: int,
        created_at: int,
    ) -> None:
        """
        Insert a new file row.

        Raises:
            IntegrityError: If the id exists or the directory is unknown
        """
        with self.get_session() as session:
            session.add(File(
                id=file_id,
                dir_id=dir_id,
                name=name,
                size=size,
                hash=hash_short,
                tg_chat_id=tg_chat_id,
                tg_msg_id=tg_msg_id,
                created_at=created_at,
                is_broken=False,
            ))

    def upsert_file(
        self,
        file_id: str,
        dir_id: str,
        name: str,
        size: int,
        hash_short: str,
        tg_chat_id: int,
        tg_msg_id: int,
        created_at: int,
    ) -> None:
        """
        Insert a file or overwrite it on id conflict.

        ``created_at`` is only written on insert. Clears ``is_broken``.
        """
        values = {
            "id": file_id,
            "dir_id": dir_id,
            "name": name,
            "size": size,
            "hash": hash_short,
            "tg_chat_id": tg_chat_id,
            "tg_msg_id": tg_msg_id,
            "created_at": created_at,
            "is_broken": False,
        }
        stmt = sqlite_insert(File).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[File.id],
            set_={key: stmt.excluded[key] for key in values if key not in ("id", "created_at")},
        )
        with self.get_session() as session:
            session.execute(stmt)

    def update_file(self, file_id: str, **fields) -> None:
        """Update the given columns of a file."""
        with self.get_session() as session:
            session.query(File).filter(File.id == file_id).update(
                fields, synchronize_session=False
            )

    def get_files_from_message(self, chat_id: int, min_message_id: int) -> List[File]:
        """Return files in a chat whose backing message id is >= the given id."""
        with self.get_session() as session:
            files = session.query(File).filter(
                File.tg_chat_id == chat_id,
                File.tg_msg_id >= min_message_id,
            ).all()
            session.expunge_all()
            return files

    def set_file_broken(self, file_id: str, is_broken: bool) -> None:
        self.update_file(file_id, is_broken=is_broken)

    def delete_file(self, file_id: str) -> None:
        """Delete a file row by its ID."""
        with self.get_session() as session:
            session.query(File).filter(File.id == file_id).delete(synchronize_session=False)

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def get_sync(self, key: str) -> Optional[str]:
        """Return a sync state value, or None if unset."""
        with self.get_session() as session:
            row = session.query(SyncState).filter(SyncState.key == key).first()
            return row.value if row else None

    def set_sync(self, key: str, value: str) -> None:
        """Insert or overwrite a sync state value."""
        stmt = sqlite_insert(SyncState).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncState.key],
            set_={"value": stmt.excluded.value},
        )
        with self.get_session() as session:
            session.execute(stmt)
