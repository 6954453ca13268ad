"""
Application Logic Layer for msgdrive

This module provides the directory and file mutators that coordinate the
local index, the storage channel transport and the download cache.
"""

from logic.directory_manager import DirectoryManager, DirNode
from logic.file_manager import FileItem, FileManager, RepairResult

__all__ = [
    'DirectoryManager',
    'DirNode',
    'FileItem',
    'FileManager',
    'RepairResult',
]
