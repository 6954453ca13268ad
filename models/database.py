"""
SQLAlchemy database models for the msgdrive local index.

This module defines the Directory, File and SyncState models. The index
mirrors the tree stored as messages in the storage channel and is rebuilt
from it by the indexer.
"""

import time
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, Index
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Directory(Base):
    """
    Represents a directory of the stored tree.

    A directory is backed by one text message in the storage channel.
    ``tg_msg_id`` is only NULL between the local insert and the first
    successful publish. ``parent_id`` is NULL for root directories.
    """
    __tablename__ = 'directories'

    id = Column(String, primary_key=True)  # time-ordered id
    parent_id = Column(String, ForeignKey('directories.id', ondelete='CASCADE'), nullable=True)
    name = Column(String, nullable=False)
    tg_msg_id = Column(Integer, nullable=True)
    updated_at = Column(Integer, nullable=False)  # unix seconds
    is_broken = Column(Boolean, default=False, nullable=False)

    files = relationship("File", back_populates="directory", passive_deletes=True)

    __table_args__ = (
        Index('idx_directories_parent', 'parent_id'),
    )

    def __repr__(self):
        return f"<Directory(id={self.id}, name={self.name})>"


class File(Base):
    """
    Represents a stored file.

    The file content lives in a message with an attachment. The message
    location (``tg_chat_id``, ``tg_msg_id``) usually points into the storage
    channel but may point elsewhere for legacy entries.
    """
    __tablename__ = 'files'

    id = Column(String, primary_key=True)  # time-ordered id
    dir_id = Column(String, ForeignKey('directories.id', ondelete='CASCADE'), nullable=False)
    name = Column(String, nullable=False)
    size = Column(Integer, nullable=False, default=0)
    hash = Column(String, nullable=False)  # 8 hex chars, naming hint only
    tg_chat_id = Column(Integer, nullable=False)
    tg_msg_id = Column(Integer, nullable=False)
    created_at = Column(Integer, nullable=False)  # unix seconds
    is_broken = Column(Boolean, default=False, nullable=False)

    directory = relationship("Directory", back_populates="files")

    __table_args__ = (
        Index('idx_files_dir', 'dir_id'),
        Index('idx_files_name', 'name'),
        Index('idx_files_location', 'tg_chat_id', 'tg_msg_id'),
    )

    def __repr__(self):
        return f"<File(id={self.id}, name={self.name})>"


class SyncState(Base):
    """Key/value store for sync watermarks and completion markers."""
    __tablename__ = 'sync_state'

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)

    def __repr__(self):
        return f"<SyncState(key={self.key}, value={self.value})>"


_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_id() -> str:
    """
    Return a new 26-character, time-ordered entity id.

    The first 10 characters encode the millisecond timestamp, the rest are
    random bits from uuid4, so ids sort by creation time.
    """
    value = (int(time.time() * 1000) << 80) | (uuid.uuid4().int & ((1 << 80) - 1))
    chars = []
    for _ in range(26):
        chars.append(_CROCKFORD[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def unix_now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


# Name given to directories created for a not-yet-seen dir_id.
PLACEHOLDER_DIR_NAME = "unknown directory"
