"""
Content Cache Resolver

Maps a logical file (directory, name, size) to a copy in the local download
cache. Downloads are laid out as ``<cache>/downloads/<dir path>/<name>``
where the directory path is built from the index. Name collisions produce
numbered variants (``report (2).txt``), and the indexed size may lag the real
one, so matching tolerates both.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from core.db_manager import DBManager
from models.database import PLACEHOLDER_DIR_NAME


logger = logging.getLogger(__name__)


DEFAULT_FILE_NAME = "file"
MAX_PATH_DEPTH = 64
MAX_NAME_VARIANTS = 99


def sanitize_component(name: str) -> str:
    """
    Make a single path component safe for the local filesystem.

    Separators, drive colons, NUL and control characters become ``_``, and
    relative segments are refused so a name can never escape the cache root.
    """
    out = []
    for ch in name:
        if ch in "/\\:\0" or ord(ch) < 32 or ord(ch) == 127:
            out.append("_")
        else:
            out.append(ch)
    cleaned = "".join(out).strip()
    if cleaned in (".", ".."):
        return "_"
    return cleaned


def split_name(name: str) -> Tuple[str, str]:
    """Split ``name`` into stem and extension (with the dot); dotfiles have no extension."""
    pos = name.rfind(".")
    if pos > 0:
        return name[:pos], name[pos:]
    return name, ""


def is_name_variant(base_stem: str, candidate_stem: str) -> bool:
    """True for ``stem`` itself or a numbered ``stem (n)``."""
    if candidate_stem == base_stem:
        return True
    if not candidate_stem.startswith(base_stem):
        return False
    rest = candidate_stem[len(base_stem):]
    if not rest.startswith(" (") or not rest.endswith(")"):
        return False
    number = rest[2:-1]
    return bool(number) and number.isdigit() and number.isascii()


def build_dir_path(db: DBManager, dir_id: str) -> Path:
    """
    Build the relative cache path of a directory from the index.

    Walks parent links leaf to root with a hard step cap, skipping empty and
    placeholder names.
    """
    names: List[str] = []
    current: Optional[str] = dir_id
    steps = 0
    while current:
        steps += 1
        if steps > MAX_PATH_DEPTH:
            break
        directory = db.get_directory(current)
        if directory is None:
            break
        if directory.name.strip() and directory.name != PLACEHOLDER_DIR_NAME:
            component = sanitize_component(directory.name)
            if component:
                names.append(component)
        current = directory.parent_id
    return Path(*reversed(names)) if names else Path()


class ContentCache:
    """
    Resolves, creates and removes cached copies of stored files.
    """

    def __init__(self, cache_dir: Path, db: DBManager):
        """
        Initialize the cache.

        Args:
            cache_dir: Cache root; downloads live under ``cache_dir / "downloads"``
            db: DBManager used to build directory paths
        """
        self.cache_dir = Path(cache_dir)
        self.downloads_dir = self.cache_dir / "downloads"
        self.db = db

    def ensure_dirs(self) -> None:
        self.downloads_dir.mkdir(parents=True, exist_ok=True)

    def dir_path(self, dir_id: str) -> Path:
        return build_dir_path(self.db, dir_id)

    def base_dir(self, dir_path: Path) -> Path:
        return self.downloads_dir / dir_path

    @staticmethod
    def _safe_name(name: str) -> str:
        return sanitize_component(name) or DEFAULT_FILE_NAME

    def _variants(self, base_dir: Path, name: str) -> List[Path]:
        if not base_dir.is_dir():
            return []
        stem, ext = split_name(self._safe_name(name))
        found = []
        for path in sorted(base_dir.iterdir()):
            if not path.is_file():
                continue
            cand_stem, cand_ext = split_name(path.name)
            if cand_ext != ext or not is_name_variant(stem, cand_stem):
                continue
            found.append(path)
        return found

    def find(self, dir_path: Path, name: str, size: int) -> Optional[Path]:
        """
        Resolve the cached copy of a file.

        Prefers a variant whose size equals ``size``; when none matches (or
        the size is unknown) the first variant found is returned, since the
        indexed size is only a hint.
        """
        variants = self._variants(self.base_dir(dir_path), name)
        if not variants:
            return None
        if size > 0:
            for path in variants:
                try:
                    if path.stat().st_size == size:
                        return path
                except OSError:
                    continue
        return variants[0]

    def find_for_file(self, dir_id: str, name: str, size: int) -> Optional[Path]:
        return self.find(self.dir_path(dir_id), name, size)

    def local_info(self, dir_path: Path, name: str, size: int) -> Tuple[bool, Optional[int]]:
        """Return ``(is_downloaded, local_size)`` for a file."""
        path = self.find(dir_path, name, size)
        if path is None:
            return False, None
        try:
            return True, path.stat().st_size
        except OSError:
            return True, None

    def preferred_target(self, base_dir: Path, name: str) -> Path:
        return base_dir / self._safe_name(name)

    def resolve_target(self, base_dir: Path, name: str, size: int) -> Path:
        """
        Choose where a new download should be written.

        An existing file with the expected size is reused; otherwise the first
        free numbered variant is chosen.
        """
        safe = self._safe_name(name)
        candidate = base_dir / safe
        if not candidate.exists():
            return candidate
        if size > 0:
            try:
                if candidate.stat().st_size == size:
                    return candidate
            except OSError:
                pass
        stem, ext = split_name(safe)
        for i in range(1, MAX_NAME_VARIANTS + 1):
            candidate = base_dir / f"{stem} ({i}){ext}"
            if not candidate.exists():
                break
        return candidate

    def remove(self, dir_id: str, name: str) -> int:
        """
        Remove every cached variant of a file and prune emptied directories.

        Returns:
            Number of files removed

        Raises:
            OSError: If a variant exists but cannot be removed
        """
        base_dir = self.base_dir(self.dir_path(dir_id))
        if not base_dir.is_dir():
            return 0
        removed = 0
        for path in self._variants(base_dir, name):
            path.unlink()
            removed += 1
        if removed or not any(base_dir.iterdir()):
            self.cleanup_empty_dirs(base_dir)
        return removed

    def cleanup_empty_dirs(self, start: Path) -> None:
        """Remove empty directories from ``start`` upward, never the downloads root."""
        root = self.downloads_dir.resolve()
        current = start.resolve()
        while current != root and root in current.parents:
            try:
                if any(current.iterdir()):
                    break
                current.rmdir()
            except OSError as e:
                logger.debug(f"Stopped cache cleanup at {current}: {e}")
                break
            current = current.parent
